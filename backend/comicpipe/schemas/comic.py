"""Pydantic schemas for structured LLM output and stage payloads.

These schemas define the expected structure of model responses (passed as
``response_schema`` to the LLM adapters) and the shapes stage workers hand
to each other through their persisted outputs.
"""

from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, BeforeValidator, Field


def _coerce_to_str(v: Any) -> str:
    """Coerce list/non-str values to comma-separated string.

    Some LLM providers (e.g. Ollama) return arrays for fields declared as
    string in the JSON schema.
    """
    if isinstance(v, list):
        return ", ".join(str(item) for item in v)
    if v is None:
        return ""
    return v


CoercedStr = Annotated[str, BeforeValidator(_coerce_to_str)]

LayoutTemplateId = Literal[
    "dialogue-4panel",
    "action-6panel",
    "establishing-3panel",
    "splash-single",
    "mixed-5panel",
    "grid-8panel",
]

BubbleType = Literal["speech", "thought", "shout", "whisper", "narration"]


# ---------------------------------------------------------------------------
# Story analysis
# ---------------------------------------------------------------------------

class DramaticCore(BaseModel):
    """The dramatic foundation the script is built on."""

    central_conflict: CoercedStr = Field(
        description="The opposing forces driving the story (vs character, vs self, vs environment)"
    )
    stakes: CoercedStr = Field(
        description="What the protagonist loses if they fail, specific and visceral"
    )
    the_turn: CoercedStr = Field(
        description="The single moment where everything changes, the climax anchor"
    )


class Setting(BaseModel):
    time: CoercedStr = Field(description="Time period of the story")
    location: CoercedStr = Field(description="Primary location(s) of the story")
    atmosphere: CoercedStr = Field(description="Overall mood of the setting")


class KeyScene(BaseModel):
    description: CoercedStr = Field(description="What happens in this key scene")
    importance: Literal["high", "medium", "low"] = Field(
        description="How critical this scene is to the story"
    )
    suggested_page: Optional[int] = Field(
        default=None, description="Recommended page number for this scene"
    )


class StoryAnalysis(BaseModel):
    """Output of the analyzing stage."""

    language: CoercedStr = Field(description="The main language of the story")
    main_theme: CoercedStr = Field(description="The central theme or message")
    dramatic_core: DramaticCore
    setting: Setting
    key_scenes: list[KeyScene] = Field(
        description="The most important scenes that must be included"
    )
    visual_motif: Optional[str] = Field(
        default=None, description="Recurring visual element that unifies the comic"
    )
    recommended_cast_size: int = Field(
        default=3, description="Minimum number of characters needed (2-6)"
    )


# ---------------------------------------------------------------------------
# Script
# ---------------------------------------------------------------------------

class ScriptCharacter(BaseModel):
    name: str = Field(description="The character's name (e.g., 'Akira', 'Yuki')")
    description: CoercedStr = Field(
        description="Brief description of the character's role and basic traits"
    )


class ScriptPanel(BaseModel):
    panel_number: int = Field(description="Panel number within this page, starting at 1")
    scene_description: CoercedStr = Field(
        description="What is happening in this panel: setting, character actions, visual elements"
    )
    prompt: CoercedStr = Field(
        description="Concise image generation prompt for this panel (composition and mood)"
    )
    shot_type: Literal["wide", "medium", "close-up", "extreme-close-up", "establishing"] = "medium"
    camera_angle: Literal[
        "eye-level", "high-angle", "low-angle", "birds-eye", "worms-eye", "dutch-angle"
    ] = "eye-level"
    characters: list[str] = Field(
        default_factory=list,
        description="Names of characters appearing in this panel, exactly as in the character list",
    )
    dialogue: CoercedStr = Field(default="", description="Spoken dialogue, empty string if none")
    narration: CoercedStr = Field(default="", description="Narrative text, empty string if none")
    sound_effects: list[str] = Field(default_factory=list)
    emotion: CoercedStr = Field(default="", description="Primary emotion of this panel")


class ScriptPage(BaseModel):
    page_number: int = Field(description="Page number, 1 to total page count")
    layout_template_id: LayoutTemplateId = Field(
        description="dialogue-4panel (conversations), action-6panel (fast action), "
        "establishing-3panel (scene setup), splash-single (dramatic moment), "
        "mixed-5panel (action with focus), grid-8panel (complex sequences)"
    )
    story_beat: Literal["introduction", "rising-action", "climax", "resolution", "transition"] = "transition"
    panels: list[ScriptPanel] = Field(
        description="Panels on this page; must match the panel count of the chosen layout"
    )
    page_hook: CoercedStr = Field(
        default="", description="Tension or question that pulls the reader to the next page"
    )


class Script(BaseModel):
    """Output of the script stage."""

    title: str = Field(description="A catchy title reflecting the theme")
    characters: list[ScriptCharacter] = Field(
        description="All characters appearing in the comic (typically 2-5)"
    )
    pages: list[ScriptPage]


class EnhancedPanel(BaseModel):
    panel_number: int = Field(description="Panel number, unchanged from the draft")
    scene_description: CoercedStr = ""
    prompt: CoercedStr = ""
    dialogue: CoercedStr = ""
    narration: CoercedStr = ""
    sound_effects: list[str] = Field(default_factory=list)
    emotion: CoercedStr = ""


class EnhancedPage(BaseModel):
    page_number: int = Field(description="Page number, unchanged from the draft")
    panels: list[EnhancedPanel] = Field(default_factory=list)
    page_hook: CoercedStr = Field(
        default="", description="Tension or question that pulls the reader to the next page"
    )


class EnhancedScript(BaseModel):
    """Rewritten text fields returned by the drama pass over a script draft.

    Empty fields mean "keep the draft".
    """

    pages: list[EnhancedPage]
    enhancement_notes: CoercedStr = Field(default="", description="Short summary of what changed")


# ---------------------------------------------------------------------------
# Characters
# ---------------------------------------------------------------------------

class CharacterProfile(BaseModel):
    name: str = Field(description="The character's name, exactly as in the script")
    physical_description: CoercedStr = Field(
        description="Build, hair, eyes, skin tone, facial features, age range, distinguishing marks"
    )
    clothing_description: CoercedStr = Field(
        description="Garments, colors, accessories the character always wears"
    )
    personality: CoercedStr = Field(default="", description="Temperament and mannerisms")
    expressions: list[str] = Field(
        default_factory=list,
        description="Signature facial expressions (e.g., 'determined', 'shy smile')",
    )


class CharacterSheet(BaseModel):
    """Output of the characters stage LLM call."""

    characters: list[CharacterProfile]


# ---------------------------------------------------------------------------
# Speech bubbles
# ---------------------------------------------------------------------------

class TailTarget(BaseModel):
    x: Optional[float] = None
    y: Optional[float] = None


class SpeechBubble(BaseModel):
    """A bubble placed on a panel. Relative geometry is 0-1 of the panel."""

    id: str
    text: str
    type: BubbleType = "speech"
    speaker: Optional[str] = None
    relative_x: float
    relative_y: float
    relative_width: float
    relative_height: float
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    tail: Optional[TailTarget] = None
    positioning_method: Literal["placeholder", "rule-based", "ai-vision"] = "placeholder"


class VisionBubble(BaseModel):
    """Bubble position suggested by a vision model."""

    relative_x: float = Field(description="X position (0-1 scale, top-left origin)")
    relative_y: float = Field(description="Y position (0-1 scale, top-left origin)")
    relative_width: float = Field(description="Width (0-1 scale)")
    relative_height: float = Field(description="Height (0-1 scale)")
    tail_target: Optional[TailTarget] = Field(
        default=None, description="Point the tail aims at, usually the speaker's mouth"
    )


class VisionBubbleLayout(BaseModel):
    bubbles: list[VisionBubble]
