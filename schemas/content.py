"""Model-facing message content: plain text or a list of typed parts."""
from typing import Annotated, List, Literal, Union
from pydantic import BaseModel, Field


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    image: str  # data URL
    media_type: str = "image/png"


class FilePart(BaseModel):
    type: Literal["file"] = "file"
    data: str  # data URL
    filename: str
    media_type: str


ContentPart = Annotated[Union[TextPart, ImagePart, FilePart], Field(discriminator="type")]


class ModelMessage(BaseModel):
    """A message in the shape sent to a language model."""
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[ContentPart]]
