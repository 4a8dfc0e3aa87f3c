from __future__ import annotations

import pytest
from pydantic import ValidationError

from pystash.models.collection import CollectionKey, asc, desc
from pystash.models.settings import UserPreferences, UserSettings
from pystash.session import Session


def test_collection_key_scope_is_order_independent() -> None:
    first = CollectionKey.of("cosmetic_events", cosmetic_id="c-1", kind="open")
    second = CollectionKey.of("cosmetic_events", {"kind": "open"}, cosmetic_id="c-1")

    assert first == second
    assert hash(first) == hash(second)
    assert first.filters == {"cosmetic_id": "c-1", "kind": "open"}
    assert str(first) == "cosmetic_events[cosmetic_id=c-1,kind=open]"


def test_collection_key_is_frozen() -> None:
    key = CollectionKey.of("food_items")
    with pytest.raises(ValidationError):
        key.name = "other"  # type: ignore[misc]


def test_collection_key_matches_ignores_missing_fields() -> None:
    key = CollectionKey.of("cosmetic_events", cosmetic_id="c-1")
    assert key.matches({"id": "e1", "cosmetic_id": "c-1"})
    assert key.matches({"id": "e1"})
    assert not key.matches({"id": "e1", "cosmetic_id": "c-2"})


def test_sort_field_renders_postgrest_order() -> None:
    assert desc("created_at").to_query() == "created_at.desc.nullslast"
    assert asc("rank", nulls_first=True).to_query() == "rank.asc.nullsfirst"


def test_preferences_use_camel_case_document() -> None:
    prefs = UserPreferences.model_validate({"selectedGeminiModel": " gemini-pro ", "theme": "dark"})

    assert prefs.selected_gemini_model == "gemini-pro"
    assert prefs.model_extra == {"theme": "dark"}
    assert prefs.to_document() == {"selectedGeminiModel": "gemini-pro", "theme": "dark"}


def test_preferences_blank_model_becomes_none() -> None:
    prefs = UserPreferences.model_validate({"selectedImageModel": "   "})
    assert prefs.selected_image_model is None


def test_preferences_merge_keeps_unrelated_keys() -> None:
    prefs = UserPreferences.model_validate({"selectedGeminiModel": "a", "theme": "dark"})
    merged = prefs.merged(selected_image_model="imagen")

    assert merged.to_document() == {
        "selectedGeminiModel": "a",
        "theme": "dark",
        "selectedImageModel": "imagen",
    }


def test_settings_row_defaults_and_coercion() -> None:
    settings = UserSettings.model_validate({"user_id": "u1", "preferences": None, "gemini_api_key": "secret-key-123"})

    assert settings.preferences == UserPreferences()
    assert settings.has_api_key
    assert "secret-key-123" not in repr(settings)
    assert not UserSettings().has_api_key


def test_session_from_token_response() -> None:
    session = Session.from_token_response(
        {
            "access_token": "jwt",
            "refresh_token": "refresh",
            "expires_in": 120,
            "user": {"id": "u1", "email": "user@example.com", "aud": "authenticated"},
        },
        default_ttl=3600,
    )

    assert session.user_id == "u1"
    assert session.ttl == 120
    assert not session.is_expired


def test_session_uses_default_ttl_and_expires() -> None:
    session = Session.from_token_response({"access_token": "jwt", "user": {"id": "u1"}}, default_ttl=3600)
    assert session.ttl == 3600

    expired = Session(access_token="jwt", actor={"id": "u1"}, created_at=0.0, ttl=1.0)  # type: ignore[arg-type]
    assert expired.is_expired
