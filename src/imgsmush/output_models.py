from __future__ import annotations

from pydantic import BaseModel


class OptimizeStatusOutput(BaseModel):
    error: str | None = None
    error_api: int | str | None = None
    percentNew: str = "0"
    file: str = ""
    basedir: str = ""
    url: str = "#"


class BulkPageOutput(BaseModel):
    counter: str
    numBatches: int
    numImages: int
    images: list[str] = []


class BulkErrorOutput(BaseModel):
    error: str
    numImages: int = 0


class ToolOutput(BaseModel):
    name: str
    path: str
    available: bool
    options: list[str] = []


class ItemImageOutput(BaseModel):
    item_id: int
    field: str
    file: str
    size: int | None = None
    width: int | None = None
    height: int | None = None
    variations: list[str] = []
