"""
Core chat assistant orchestration.

This package provides:
- Conversation threads with pluggable storage (``context``)
- A middleware pipeline around every assistant ask (``pipeline``)
- Human/AI handoff state management and inbound dispatch (``orchestration``)

Import from the subpackages; ``config`` depends on ``context`` and
``orchestration`` depends on ``config``.
"""
