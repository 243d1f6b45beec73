"""System prompt assembly: base behaviour + dynamic context + user instructions."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

from .system import PromptConfig

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Follow the user's instructions carefully. "
    "Respond using markdown."
)

USER_INSTRUCTIONS_MARKER = "# User Instructions\n\n"


class UserInfo(BaseModel):
    """Optional user details the user opted into sharing with the model."""

    name: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None
    additional_context: Optional[str] = None


def _format_datetime(now: datetime) -> str:
    return now.strftime("%A, %B %d, %Y, %I:%M %p %Z").strip()


def _build_dynamic_context(now: datetime, user_info: Optional[UserInfo]) -> str:
    parts = [f"Current date and time: {_format_datetime(now)}"]

    if user_info is not None:
        user_lines = [
            f"- {label}: {value}"
            for label, value in (
                ("Name", user_info.name),
                ("Title", user_info.title),
                ("Email", user_info.email),
                ("Department", user_info.department),
            )
            if value
        ]
        section = ""
        if user_lines:
            section = "\n## About the Current User\n" + "\n".join(user_lines)
        if user_info.additional_context:
            section += "\n\n" if user_lines else "\n## About the Current User\n"
            section += f"Additional context:\n{user_info.additional_context}"
        if section:
            parts.append(section)

    return "# Dynamic Context\n\n" + "\n".join(parts) + "\n"


def build_system_prompt(
    config: PromptConfig,
    user_prompt: Optional[str] = None,
    user_info: Optional[UserInfo] = None,
    now: Optional[datetime] = None,
) -> str:
    """Combine the base prompt, dynamic context and the user's instructions."""
    effective_user_prompt = (user_prompt or "").strip() or config.default_user_prompt
    dynamic = _build_dynamic_context(now or datetime.now(timezone.utc), user_info)
    return (
        f"{config.base_system_prompt}\n\n{dynamic}\n"
        f"{USER_INSTRUCTIONS_MARKER}{effective_user_prompt}"
    )


def apply_tone(system_prompt: str, tone_name: str, voice_rules: str) -> str:
    """Append a tone's voice rules to *system_prompt*."""
    if not voice_rules.strip():
        return system_prompt
    return f"{system_prompt}\n\n# Writing Style: {tone_name}\n\n{voice_rules.strip()}"
