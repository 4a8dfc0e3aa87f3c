"""User settings row and its typed preference document."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pystash.models._base import StashBaseModel


class UserPreferences(StashBaseModel):
    """Typed view of ``user_settings.preferences``.

    Known keys are validated; unknown keys survive round-trips in
    ``model_extra`` but are never consulted by the library.
    """

    selected_gemini_model: str | None = None
    selected_image_model: str | None = None

    @field_validator("selected_gemini_model", "selected_image_model")
    @classmethod
    def _strip_model_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    def to_document(self) -> dict[str, Any]:
        """Serialize back to the camelCase JSON document stored in the row."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def merged(self, **changes: Any) -> UserPreferences:
        document = self.to_document()
        document.update(UserPreferences.model_validate(changes).to_document())
        return UserPreferences.model_validate(document)


class UserSettings(BaseModel):
    """One ``user_settings`` row (absent rows yield the defaults)."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    user_id: str | None = None
    gemini_api_key: str | None = Field(default=None, repr=False)
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("preferences", mode="before")
    @classmethod
    def _coerce_preferences(cls, value: Any) -> Any:
        # Rows may hold null or a non-object JSON value.
        return value if isinstance(value, (dict, UserPreferences)) else {}

    @property
    def has_api_key(self) -> bool:
        return bool(self.gemini_api_key)
