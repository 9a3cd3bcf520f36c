from decimal import Decimal
from types import SimpleNamespace

from app import config
from app.services.message_templates import render_reward_message, render_template, resolve_template


def _parts(template=None):
    condition = SimpleNamespace(message_template=template)
    recipient = SimpleNamespace(first_name="Dana", last_name="Rivera", email="dana@example.com", phone="+15550001111")
    unit = SimpleNamespace(code="AMZ-1234")
    pool = SimpleNamespace(brand="Amazon", denomination=Decimal("25.00"))
    return condition, recipient, unit, pool


def test_system_default_sms_message():
    condition, recipient, unit, pool = _parts()

    body = render_reward_message(condition=condition, recipient=recipient, unit=unit, pool=pool, client_name="Sunrise Dental")

    assert body == "Hi Dana! Your $25 Amazon gift card is ready. Code: AMZ-1234. Thanks for choosing Sunrise Dental!"


def test_condition_template_beats_configured_default(monkeypatch):
    monkeypatch.setattr(config, "REWARD_SMS_TEMPLATE", "Configured {code}")
    condition, _, _, _ = _parts("Condition {code}")

    assert resolve_template(condition, "sms") == "Condition {code}"
    assert resolve_template(SimpleNamespace(message_template=" "), "sms") == "Configured {code}"


def test_email_uses_its_own_default():
    condition, recipient, unit, pool = _parts()

    body = render_reward_message(condition=condition, recipient=recipient, unit=unit, pool=pool, channel="email")

    assert body.startswith("Hi Dana,")
    assert "Code: AMZ-1234" in body


def test_unknown_placeholders_render_empty_and_bad_braces_pass_through():
    assert render_template("Hello {nickname}!", {"first_name": "Dana"}) == "Hello !"
    assert render_template("Broken {code", {"code": "X"}) == "Broken {code"


def test_fractional_denomination_is_kept():
    condition, recipient, unit, _ = _parts()
    pool = SimpleNamespace(brand="Visa", denomination=Decimal("12.50"))

    body = render_reward_message(condition=condition, recipient=recipient, unit=unit, pool=pool)

    assert "$12.50 Visa" in body
