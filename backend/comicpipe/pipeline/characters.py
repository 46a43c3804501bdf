"""Character extraction: build the cast and its @handles from the script."""

import logging
import re
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.config import settings
from comicpipe.db.models import Character, Project
from comicpipe.pipeline.base import StageContext, StageWorker
from comicpipe.schemas.comic import CharacterProfile, CharacterSheet, Script
from comicpipe.services.llm import LLMAdapter, get_adapter

logger = logging.getLogger(__name__)

CHARACTER_PROMPT = """Create consistent visual character profiles for a {art_style} comic.

**Story:** {synopsis}

**Cast from the script:**
{cast}

For EVERY character listed above (use the exact same names), describe:
- physical appearance detailed enough to draw them identically in every panel
  (build, hair, eyes, skin tone, facial features, age range, one distinctive
  visual anchor)
- the clothing they always wear
- personality and mannerisms
- 3-5 signature facial expressions

Return the profiles in the specified JSON format."""


def make_handle(name: str) -> str:
    """'Captain Mira' -> '@captainmira'."""
    return "@" + re.sub(r"\s+", "", name.lower())


class CharactersWorker(StageWorker):
    """Runs the characters stage."""

    stage = "characters"

    def __init__(self, adapter: Optional[LLMAdapter] = None):
        self._adapter = adapter

    @property
    def adapter(self) -> LLMAdapter:
        if self._adapter is None:
            self._adapter = get_adapter(settings.models.script_llm)
        return self._adapter

    async def run(self, context: StageContext) -> dict:
        script = Script.model_validate(context.output_of("script"))
        if not script.characters:
            return {"characters": []}

        cast = "\n".join(f"- {char.name}: {char.description}" for char in script.characters)
        prompt = CHARACTER_PROMPT.format(
            art_style=context.project.style,
            synopsis=context.project.synopsis,
            cast=cast,
        )
        sheet = await self.adapter.generate_text(prompt, CharacterSheet, temperature=0.5)
        profiles = {profile.name.strip().lower(): profile for profile in sheet.characters}

        characters = []
        seen = set()
        for char in script.characters:
            handle = make_handle(char.name)
            if handle in seen or handle == "@":
                continue
            seen.add(handle)
            profile = profiles.get(char.name.strip().lower()) or CharacterProfile(
                name=char.name, physical_description="", clothing_description=""
            )
            characters.append({
                "name": char.name,
                "handle": handle,
                "description": _describe(char.description, profile),
                "expressions": profile.expressions,
            })

        logger.info(f"Project {context.project.id}: cast of {len(characters)}")
        return {"characters": characters}

    async def persist(self, session: AsyncSession, project: Project, output: dict) -> None:
        result = await session.execute(select(Character).where(Character.project_id == project.id))
        existing = {char.handle: char for char in result.scalars().all()}

        handles = set()
        for data in output.get("characters", []):
            handles.add(data["handle"])
            character = existing.get(data["handle"])
            if character is None:
                character = Character(project_id=project.id, handle=data["handle"])
                session.add(character)
            character.name = data["name"]
            character.description = data["description"]
            character.expressions = data["expressions"]

        stale = [handle for handle in existing if handle not in handles]
        if stale:
            await session.execute(
                delete(Character).where(
                    Character.project_id == project.id,
                    Character.handle.in_(stale),
                )
            )


def _describe(role: str, profile: CharacterProfile) -> str:
    parts = [role, profile.physical_description, profile.clothing_description, profile.personality]
    return "\n".join(part.strip() for part in parts if part and part.strip())
