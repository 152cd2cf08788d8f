"""Domain models for Cardboard."""

from cardboard_core.models.card import CardPayload, FileCard, ImageCard, parse_card, upload_key

__all__ = [
    "CardPayload",
    "FileCard",
    "ImageCard",
    "parse_card",
    "upload_key",
]
