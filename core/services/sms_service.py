"""
Messaging transports.

The assistant core only needs to send a message to a chat and to look up the
contact behind it. ``TwilioSMSTransport`` provides both over SMS, using the
sender's phone number as the chat id.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from models.schemas import Contact

logger = logging.getLogger(__name__)

MAX_SMS_LENGTH = 1600


class MessagingTransport(ABC):
    """Outbound capability of the messaging collaborator"""

    @abstractmethod
    async def send_message(self, chat_id: str, text: str) -> bool:
        """Send text to a chat, returning whether the transport accepted it"""

    @abstractmethod
    async def get_contact(self, chat_id: str) -> Contact:
        """Look up the contact behind a chat"""


class TwilioSMSTransport(MessagingTransport):
    """Service for sending SMS messages via Twilio"""

    def __init__(self, account_sid: Optional[str] = None, auth_token: Optional[str] = None,
                 from_number: Optional[str] = None, client: Optional[Client] = None,
                 lookup_caller_name: bool = False):
        self.from_number = from_number
        self.lookup_caller_name = lookup_caller_name

        if client is not None:
            self.client = client
        elif not all([account_sid, auth_token, from_number]):
            logger.warning("Twilio credentials not configured - SMS sending will fail")
            logger.warning("   Set: TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER")
            self.client = None
        else:
            try:
                self.client = Client(account_sid, auth_token)
                logger.info(f"Twilio SMS transport initialized | From: {self.from_number}")
            except Exception as e:
                logger.error(f"Failed to initialize Twilio client: {e}")
                self.client = None

    @staticmethod
    def normalize_phone_number(phone: str) -> str:
        """
        Normalize phone number to E.164 format (+1XXXXXXXXXX)

        Handles formats:
        - 4045551234 → +14045551234
        - (404) 555-1234 → +14045551234
        - +1 404-555-1234 → +14045551234
        """
        digits_only = re.sub(r'[^\d]', '', phone)

        # Remove leading 1 if present (will add back)
        if digits_only.startswith('1') and len(digits_only) == 11:
            digits_only = digits_only[1:]

        if len(digits_only) != 10:
            raise ValueError(f"Invalid phone number format: {phone} (expected 10 digits)")

        return f"+1{digits_only}"

    async def send_message(self, chat_id: str, text: str) -> bool:
        """
        Send SMS to the chat's phone number

        Args:
            chat_id: Recipient phone number (any format, will be normalized)
            text: Message text, truncated to 1600 chars

        Returns:
            True if Twilio accepted the message
        """
        if not self.client:
            logger.error("Cannot send SMS - Twilio client not initialized")
            return False

        try:
            normalized_phone = self.normalize_phone_number(chat_id)

            if len(text) > MAX_SMS_LENGTH:
                logger.warning(f"Message truncated from {len(text)} to {MAX_SMS_LENGTH} chars")
                text = text[:MAX_SMS_LENGTH - 3] + "..."

            logger.info(f"Sending SMS to {normalized_phone}")
            twilio_message = await asyncio.to_thread(
                self.client.messages.create,
                to=normalized_phone,
                from_=self.from_number,
                body=text
            )
            logger.info(f"SMS sent | SID: {twilio_message.sid} | Status: {twilio_message.status}")
            return True

        except TwilioRestException as e:
            logger.error(f"Twilio API error sending SMS to {chat_id}")
            logger.error(f"   Error code: {e.code} | Message: {e.msg}")
            return False

        except ValueError as e:
            logger.error(f"Invalid phone number: {e}")
            return False

    async def get_contact(self, chat_id: str) -> Contact:
        number = self.normalize_phone_number(chat_id)
        display_name = None

        if self.lookup_caller_name and self.client:
            try:
                result = await asyncio.to_thread(
                    self.client.lookups.v2.phone_numbers(number).fetch,
                    fields="caller_name"
                )
                display_name = (result.caller_name or {}).get("caller_name")
            except TwilioRestException as e:
                logger.warning(f"Caller name lookup failed for {number}: {e.msg}")

        return Contact(display_name=display_name, number=number)
