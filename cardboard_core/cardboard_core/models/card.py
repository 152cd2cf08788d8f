"""Card payload models.

A card has one identity and one of several payload shapes selected by
``kind``.  Image and file cards point at an uploaded object through
``image_key`` / ``file_key``; the sizes in their payloads are display
hints, storage is metered on the upload itself.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _CardBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    x: float = 0.0
    y: float = 0.0
    width: float | None = Field(default=None, ge=0)
    height: float | None = Field(default=None, ge=0)
    z_index: int = 0
    parent_column_id: str | None = None


class NoteCard(_CardBase):
    kind: Literal["note"] = "note"
    content: str = Field(default="", max_length=50_000)
    color: str = "#fff9b1"


class TextCard(_CardBase):
    kind: Literal["text"] = "text"
    content: str = Field(default="", max_length=50_000)
    font_size: int = Field(default=16, ge=1, le=512)


class LinkCard(_CardBase):
    kind: Literal["link"] = "link"
    url: str = Field(..., max_length=4096)
    title: str | None = None
    description: str | None = None
    favicon_url: str | None = None


class ImageCard(_CardBase):
    kind: Literal["image"] = "image"
    image_url: str = Field(..., max_length=4096)
    image_key: str | None = None
    image_size: int = Field(..., ge=0)
    alt: str | None = None


class FileCard(_CardBase):
    kind: Literal["file"] = "file"
    file_url: str = Field(..., max_length=4096)
    file_key: str | None = None
    file_name: str = Field(..., max_length=1024)
    file_size: int = Field(..., ge=0)
    mime_type: str | None = None


class TaskItem(BaseModel):
    text: str = Field(default="", max_length=2_000)
    done: bool = False


class TaskListCard(_CardBase):
    kind: Literal["task_list"] = "task_list"
    title: str = "Tasks"
    tasks: list[TaskItem] = Field(default_factory=list, max_length=500)


class ColumnCard(_CardBase):
    kind: Literal["column"] = "column"
    title: str = ""
    collapsed: bool = False


class ColorPaletteCard(_CardBase):
    kind: Literal["color_palette"] = "color_palette"
    colors: list[str] = Field(default_factory=list, max_length=64)


class LineCard(_CardBase):
    kind: Literal["line"] = "line"
    start_card_id: str | None = None
    end_card_id: str | None = None
    points: list[tuple[float, float]] = Field(default_factory=list)
    stroke_color: str = "#000000"
    stroke_width: float = Field(default=2.0, gt=0)


class DrawingCard(_CardBase):
    kind: Literal["drawing"] = "drawing"
    paths: list[dict[str, Any]] = Field(default_factory=list)


class BoardLinkCard(_CardBase):
    kind: Literal["board"] = "board"
    linked_board_id: str


CardPayload = Annotated[
    NoteCard
    | TextCard
    | LinkCard
    | ImageCard
    | FileCard
    | TaskListCard
    | ColumnCard
    | ColorPaletteCard
    | LineCard
    | DrawingCard
    | BoardLinkCard,
    Field(discriminator="kind"),
]

_card_adapter: TypeAdapter[Any] = TypeAdapter(CardPayload)


def parse_card(data: dict[str, Any]) -> CardPayload:
    """Validate raw JSON into the payload model for its ``kind``."""
    return _card_adapter.validate_python(data)


def upload_key(card: CardPayload) -> str | None:
    """Bucket key of the uploaded object an image or file card shows."""
    if isinstance(card, ImageCard):
        return card.image_key
    if isinstance(card, FileCard):
        return card.file_key
    return None
