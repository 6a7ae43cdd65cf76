from typing import Optional

from pydantic import BaseModel, Field, ValidationError


class Settings(BaseModel):
    db_path: str = "workout.db"
    position_scale: int = Field(10, ge=0, le=10)
    position_step: int = Field(1, gt=0)
    default_rest_seconds: int = Field(90, gt=0)
    api_base_url: str = "http://localhost:8000"
    api_token: Optional[str] = None
    log_level: str = "INFO"


def validate_settings(data: dict) -> None:
    try:
        Settings(**data)
    except ValidationError as e:
        raise ValueError(str(e))
