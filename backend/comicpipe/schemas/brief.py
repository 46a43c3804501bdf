"""Story brief: the user input a generation run starts from."""

from typing import Optional

from pydantic import BaseModel, StrictInt


class StoryBrief(BaseModel):
    """Brief handed to the orchestrator. Range checks happen in ``start``."""

    synopsis: str
    art_style: str
    total_pages: StrictInt
    genre: Optional[str] = None
    title: Optional[str] = None
