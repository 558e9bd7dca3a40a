"""Parser for structured commands such as ``!order item:pizza quantity:2``"""
import math
import re
from typing import Any, Dict, List, Optional, Union
import logging

from models.schemas import FieldSpec, MessageTemplate, ParsedMessage

logger = logging.getLogger(__name__)

COMMAND_PATTERN = re.compile(r"^!(\w+)")
# Values hold letters, digits, underscores and whitespace only; a value ends
# at punctuation or where the next "key:" token starts
KEY_VALUE_PATTERN = re.compile(r"(\w+):([\w\s]+?)(?=\s+\w+:|[^\w\s]|$)")


class TemplateParser:
    """Parses messages against named templates"""

    def __init__(self, default_templates: Optional[Dict[str, Union[MessageTemplate, Dict[str, Any]]]] = None):
        self._templates: Dict[str, MessageTemplate] = {}
        for name, template in (default_templates or {}).items():
            self.add_template(name, template)

    def add_template(self, name: str, template: Union[MessageTemplate, Dict[str, Any]]):
        if not isinstance(template, MessageTemplate):
            template = MessageTemplate.model_validate(template)
        self._templates[name] = template

    def get_template(self, name: str) -> Optional[MessageTemplate]:
        return self._templates.get(name)

    def template_names(self) -> List[str]:
        return list(self._templates)

    def parse_message(self, text: str, template: Union[str, MessageTemplate]) -> ParsedMessage:
        """
        Parse a message using a template.

        Args:
            text: Message to parse
            template: Template name or definition

        Returns:
            Parsed message; problems are reported in ``errors``, never raised
        """
        if isinstance(template, str):
            template_def = self.get_template(template)
            if template_def is None:
                return ParsedMessage(is_valid=False, errors=[f'Template "{template}" not found'])
            template = template_def

        data: Dict[str, Any] = {}

        command_match = COMMAND_PATTERN.match(text)
        if command_match:
            data["command"] = command_match.group(1)

        for key, raw_value in KEY_VALUE_PATTERN.findall(text):
            value = raw_value.strip()
            if not value:
                continue
            field = template.fields.get(key)
            data[key] = self._convert_value_type(value, field.type if field else None)

        return self.validate_parsed_message(data, template)

    def validate_parsed_message(self, data: Dict[str, Any], template: MessageTemplate) -> ParsedMessage:
        """Check parsed data against a template, collecting every violation"""
        errors = []

        for name, field in template.fields.items():
            value = data.get(name)

            if field.required and value is None:
                errors.append(f'Required field "{name}" is missing')

            if value is None:
                continue

            if not self._has_type(value, field.type):
                errors.append(f'Field "{name}" should be a {field.type}')

            if field.pattern and not re.search(field.pattern, self._to_string(value)):
                errors.append(f'Field "{name}" does not match pattern {field.pattern}')

        return ParsedMessage(is_valid=not errors, errors=errors, data=data)

    def generate_template(self, examples: List[str]) -> MessageTemplate:
        """Infer a template from example messages"""
        fields: Dict[str, FieldSpec] = {}

        for example in examples:
            if COMMAND_PATTERN.match(example) and "command" not in fields:
                fields["command"] = FieldSpec(type="string", required=True)

            for key, raw_value in KEY_VALUE_PATTERN.findall(example):
                value = raw_value.strip()
                if not value or key in fields:
                    continue
                if self._is_numeric(value):
                    field_type = "number"
                elif value in ("true", "false"):
                    field_type = "boolean"
                else:
                    field_type = "string"
                fields[key] = FieldSpec(type=field_type, required=False)

        logger.debug(f"Generated template with fields {list(fields)} from {len(examples)} examples")
        return MessageTemplate(fields=fields, examples=list(examples))

    @staticmethod
    def _is_numeric(value: str) -> bool:
        try:
            return not math.isnan(float(value))
        except ValueError:
            return False

    @staticmethod
    def _convert_value_type(value: str, field_type: Optional[str]) -> Any:
        if field_type == "number":
            try:
                return int(value)
            except ValueError:
                pass
            try:
                return float(value)
            except ValueError:
                return math.nan
        if field_type == "boolean":
            return value == "true"
        if field_type == "array":
            return [item.strip() for item in value.split(",")]
        return value

    @staticmethod
    def _has_type(value: Any, field_type: str) -> bool:
        if field_type == "number":
            return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)
        if field_type == "boolean":
            return isinstance(value, bool)
        if field_type == "array":
            return isinstance(value, list)
        return isinstance(value, str)

    @staticmethod
    def _to_string(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, list):
            return ",".join(str(item) for item in value)
        return str(value)
