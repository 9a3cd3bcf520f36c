"""
Reward message rendering.

Template resolution order: condition template -> configured default
(REWARD_SMS_TEMPLATE / REWARD_EMAIL_TEMPLATE) -> system default. Unknown
placeholders render as empty strings.
"""

from decimal import Decimal

from app import config


SYSTEM_DEFAULT_TEMPLATES = {
    "sms": "Hi {first_name}! Your ${value} {brand} gift card is ready. Code: {code}. Thanks for choosing {client_name}!",
    "email": (
        "Hi {first_name},\n\n"
        "Thank you for your response. Your ${value} {brand} gift card is ready.\n\n"
        "Code: {code}\n\n"
        "{client_name}"
    ),
}


class _Blank(dict):
    def __missing__(self, key):
        return ""


def _format_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (Decimal, float)) and value == int(value):
        return str(int(value))
    return str(value)


def resolve_template(condition, channel: str = "sms") -> str:
    if condition is not None and (condition.message_template or "").strip():
        return condition.message_template

    configured = config.REWARD_EMAIL_TEMPLATE if channel == "email" else config.REWARD_SMS_TEMPLATE
    if configured and configured.strip():
        return configured

    return SYSTEM_DEFAULT_TEMPLATES.get(channel, SYSTEM_DEFAULT_TEMPLATES["sms"])


def render_template(template: str, variables: dict) -> str:
    try:
        return template.format_map(_Blank(variables)).strip()
    except (ValueError, IndexError, AttributeError):
        # malformed braces in a user template: send it untouched rather than nothing
        return template.strip()


def render_reward_message(*, condition, recipient, unit, pool, client_name: str | None = None, channel: str = "sms") -> str:
    variables = {
        "first_name": (recipient.first_name or "there") if recipient else "there",
        "last_name": (recipient.last_name or "") if recipient else "",
        "email": (recipient.email or "") if recipient else "",
        "phone": (recipient.phone or "") if recipient else "",
        "code": unit.code if unit else "",
        "brand": pool.brand if pool else "",
        "value": _format_value(pool.denomination) if pool else "",
        "client_name": client_name or "",
        "company": client_name or "",
    }
    return render_template(resolve_template(condition, channel), variables)
