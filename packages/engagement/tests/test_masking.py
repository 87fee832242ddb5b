"""Tests for contact masking and gating."""

import pytest

from engagement_core.config import RoutesConfig
from engagement_core.errors import Invalid
from engagement_core.masking import mask, mask_email, mask_phone, reveal, reveal_contact
from engagement_core.schemas import Capability, ContactKind

from .conftest import capability_for

ANONYMOUS = Capability.anonymous()
PENDING = Capability.unresolved()
MEMBER = capability_for("u-1")
SUBSCRIBER = capability_for("u-2", subscribed=True)
ADMIN = capability_for("u-3", admin=True)


class TestMaskEmail:
    def test_short_example(self):
        masked = mask("ab@xyz.com", "email")
        assert masked.startswith("ab***@xy***.")
        assert masked == "ab***@xy***.com"

    def test_typical_address(self):
        assert mask_email("jane@example.com") == "ja***@ex***.com"

    def test_no_domain_uses_placeholder(self):
        assert mask_email("not-an-email") == "***@***.***"
        assert mask_email("jane@") == "***@***.***"

    def test_domain_without_tld(self):
        assert mask_email("jane@localhost") == "ja***@lo***.***"

    def test_subdomains_keep_last_label(self):
        assert mask_email("jo@mail.example.co.uk") == "jo***@ma***.uk"

    def test_short_local_part(self):
        assert mask_email("j@x.io") == "j***@x***.io"

    def test_domain_ends_at_next_at_sign(self):
        assert mask_email("a@b@c.com") == "a***@b***.***"
        assert mask_email("jane@example.com@evil.org") == "ja***@ex***.com"

    def test_deterministic(self):
        assert mask_email("jane@example.com") == mask_email("jane@example.com")


class TestMaskPhone:
    def test_keeps_first_four(self):
        assert mask_phone("+1 555 123 4567") == "+155 *** ***"

    def test_whitespace_stripped_before_length_check(self):
        assert mask_phone(" 1 2 3 4 ") == "****"

    def test_short_number(self):
        assert mask_phone("123") == "****"
        assert mask_phone("") == "****"

    def test_five_digits(self):
        assert mask("12345", ContactKind.PHONE) == "1234 *** ***"


def test_unknown_kind_rejected():
    with pytest.raises(Invalid):
        mask("x", "fax")


class TestReveal:
    def test_raw_value_only_for_subscribers_and_admins(self):
        for capability in (SUBSCRIBER, ADMIN):
            field = reveal("jane@example.com", "email", capability)
            assert field.text == "jane@example.com"
            assert field.masked is False
            assert field.interactive is True

        for capability in (ANONYMOUS, MEMBER, PENDING):
            field = reveal("jane@example.com", "email", capability)
            assert field.text == "ja***@ex***.com"
            assert "jane@example.com" not in field.model_dump_json()
            assert field.interactive is False

    def test_signed_in_unsubscribed_is_sent_to_pricing(self):
        field = reveal("jane@example.com", "email", MEMBER)
        assert field.masked is True
        assert field.unlock_path == "/pricing"

    def test_anonymous_is_sent_to_sign_in(self):
        field = reveal("+1 555 123 4567", "phone", ANONYMOUS, RoutesConfig(auth_path="/login"))
        assert field.text == "+155 *** ***"
        assert field.unlock_path == "/login"

    def test_pending_shows_loading_state(self):
        field = reveal("jane@example.com", "email", PENDING)
        assert field.pending is True
        assert field.masked is True
        assert field.unlock_path is None


class TestRevealContact:
    def test_locked_card(self):
        card = reveal_contact(MEMBER, email="jane@example.com", phone="0412 345 678")
        assert card.locked is True
        assert card.unlock_path == "/pricing"
        assert card.email.text == "ja***@ex***.com"
        assert card.phone.text == "0412 *** ***"

    def test_unlocked_card(self):
        card = reveal_contact(SUBSCRIBER, email="jane@example.com")
        assert card.locked is False
        assert card.unlock_path is None
        assert card.email.text == "jane@example.com"
        assert card.phone is None

    def test_pending_card(self):
        card = reveal_contact(PENDING, phone="0412 345 678")
        assert card.pending is True
        assert card.locked is True
        assert card.unlock_path is None
