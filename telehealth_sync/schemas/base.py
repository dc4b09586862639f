"""Base Pydantic model for the sync view models."""

from pydantic import BaseModel, ConfigDict


class BaseSyncModel(BaseModel):
    """Base model for patient and appointment views."""

    model_config = ConfigDict(
        validate_assignment=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        from_attributes=True,
    )
