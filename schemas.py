"""Request models for the HTTP API."""

from typing import Optional, List, Dict

from pydantic import BaseModel, ConfigDict, Field


class HeadshotPreferences(BaseModel):
    """Styling choices for a generated headshot. Unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    background: Optional[str] = Field(default=None, max_length=100)
    lighting: Optional[str] = Field(default=None, max_length=100)
    clothing: Optional[str] = Field(default=None, max_length=100)
    mood: Optional[str] = Field(default=None, max_length=100)
    style: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = Field(default=None, max_length=500)

    def normalized(self) -> Dict[str, str]:
        """Only the fields that were set, with empty strings dropped."""
        return {
            key: value
            for key, value in self.model_dump(exclude_none=True).items()
            if value
        }


class GenerateRequest(BaseModel):
    """Body of POST /api/generate."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    image_ids: List[str] = Field(alias="imageIds")
    preferences: HeadshotPreferences

