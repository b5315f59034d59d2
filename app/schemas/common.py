from __future__ import annotations

from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, StringConstraints
from pydantic.alias_generators import to_camel


def _http_url(value: str) -> str:
    clean = value.strip()
    if not clean.lower().startswith(("http://", "https://")):
        raise ValueError("must be an http(s) URL")
    return clean


HttpUrlStr = Annotated[str, StringConstraints(max_length=1024), AfterValidator(_http_url)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaginationOut(CamelModel):
    page: int
    limit: int
    total: int
    pages: int
