"""Tests for anonsync.transform -- column masking rules."""

from __future__ import annotations

import pytest

from anonsync.transform import (
    DEFAULT_PASSWORD_HASH,
    DEFAULT_POLICY,
    TransformPolicy,
    constant,
    template,
)


class TestDefaultPolicy:
    def test_user_row(self):
        record = {"id": 42, "email": "alice@real.com", "password": "x", "name": "Alice"}
        DEFAULT_POLICY.apply(record)
        assert record == {
            "id": 42,
            "email": "dev_hotel42@movefast.xyz",
            "password": DEFAULT_PASSWORD_HASH,
            "name": "Alice",
        }

    def test_hotel_row(self):
        record = {
            "id": 7,
            "hotel_email": "h@real.com",
            "hotel_phone": "+1 555",
            "hotel_whatsapp": "+1 556",
        }
        DEFAULT_POLICY.apply(record)
        assert record["hotel_email"] == "hotel_arch7@movefast.xyz"
        assert record["hotel_phone"] == "080-2222-2222"
        assert record["hotel_whatsapp"] == "080-1111-1111"

    def test_untouched_when_no_ruled_columns(self):
        record = {"id": 1, "title": "t", "price": 10}
        assert DEFAULT_POLICY.apply(dict(record)) == record

    def test_idempotent(self):
        once = DEFAULT_POLICY.apply({"id": 3, "email": "a@b", "password": "p"})
        twice = DEFAULT_POLICY.apply(dict(once))
        assert once == twice

    def test_null_values_are_overwritten(self):
        record = DEFAULT_POLICY.apply({"id": 5, "email": None, "hotel_phone": None})
        assert record["email"] == "dev_hotel5@movefast.xyz"
        assert record["hotel_phone"] == "080-2222-2222"

    def test_template_without_key_value_refuses(self):
        with pytest.raises(ValueError, match="email"):
            DEFAULT_POLICY.apply({"id": None, "email": "ceo@real-customer.com"})
        with pytest.raises(ValueError, match="hotel_email"):
            DEFAULT_POLICY.apply({"hotel_email": "front@real-hotel.com", "password": "p"})

    def test_null_template_column_without_key_value_stays_null(self):
        record = DEFAULT_POLICY.apply({"id": None, "email": None, "password": "p"})
        assert record["email"] is None
        assert record["password"] == DEFAULT_PASSWORD_HASH

    def test_custom_key_column(self):
        policy = TransformPolicy({"email": template("u{id}@example.test")})
        record = policy.apply({"user_id": 9, "email": "x"}, key="user_id")
        assert record["email"] == "u9@example.test"


class TestFromConfig:
    def test_none_gives_default(self):
        assert TransformPolicy.from_config(None) is DEFAULT_POLICY

    def test_template_constant_and_bare_value(self):
        policy = TransformPolicy.from_config({
            "email": {"template": "user{id}@example.test"},
            "phone": {"constant": "000"},
            "ssn": None,
        })
        assert policy.columns == {"email", "phone", "ssn"}
        record = policy.apply({"id": 1, "email": "e", "phone": "p", "ssn": "123"})
        assert record == {"id": 1, "email": "user1@example.test", "phone": "000", "ssn": None}

    def test_empty_mapping_masks_nothing(self):
        policy = TransformPolicy.from_config({})
        assert len(policy) == 0
        assert policy.apply({"id": 1, "email": "keep"}) == {"id": 1, "email": "keep"}

    def test_rejects_ambiguous_rule(self):
        with pytest.raises(ValueError, match="exactly one"):
            TransformPolicy.from_config({"email": {"template": "a", "constant": "b"}})

    def test_rejects_non_mapping(self):
        with pytest.raises(TypeError):
            TransformPolicy.from_config(["email"])


class TestRule:
    def test_render(self):
        assert template("x{id}").render(12) == "x12"
        assert constant(0).render(12) == 0
