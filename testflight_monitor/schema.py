from __future__ import annotations

from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator


TESTFLIGHT_HOST_MARKER = "testflight.apple.com"


def validate_testflight_url(value: str) -> str:
    s = (value or "").strip()
    try:
        parts = urlsplit(s)
    except ValueError as exc:
        raise ValueError(f"invalid url: {exc}") from exc
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ValueError("url must be an absolute http(s) URL")
    if TESTFLIGHT_HOST_MARKER not in s.lower():
        raise ValueError(f"url must be a TestFlight invite link ({TESTFLIGHT_HOST_MARKER})")
    return s


class CreateBuildRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=1024)
    name: str = Field(..., min_length=1, max_length=100)
    version: str = Field(..., min_length=1, max_length=20)
    build_number: str = Field(..., min_length=1, max_length=20)
    notes: str | None = Field(None, max_length=500)
    is_public: bool = True

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        return validate_testflight_url(v)

    @field_validator("name", "version", "build_number")
    @classmethod
    def _strip(cls, v: str) -> str:
        s = v.strip()
        if not s:
            raise ValueError("must not be blank")
        return s
