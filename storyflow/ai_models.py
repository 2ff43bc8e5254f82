# storyflow/ai_models.py
"""
Typed records for everything the AI gateway accepts and returns.

Field names are camelCase because they go over the wire unchanged to the web
client. Model output is validated into these records at the gateway boundary;
missing fields take the defaults below.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, dict):
        return [str(v) for v in value.values() if v]
    return [str(v) for v in value if v is not None and str(v).strip()]


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


class AIModel(BaseModel):
    """Common base: lists tolerate a bare string, strings tolerate a list."""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce(cls, value, info):
        field = cls.model_fields.get(info.field_name)
        if field is None:
            return value
        annotation = str(field.annotation)
        if "List[str]" in annotation or "list[str]" in annotation:
            return _as_str_list(value)
        if field.annotation is str or (annotation == "typing.Optional[str]" and value is not None):
            return _as_str(value)
        return value


# -----------------------
# Editor assistance
# -----------------------

class CharacterBrief(AIModel):
    name: str
    description: str = ""
    traits: List[str] = Field(default_factory=list)

    def as_prompt_line(self) -> str:
        return f"{self.name}: {self.description} Traits: {', '.join(self.traits)}"


class PlotSuggestion(AIModel):
    content: str


class CharacterInteraction(AIModel):
    content: str


class StyleSuggestion(AIModel):
    title: str
    description: str = ""


class SuggestionSet(AIModel):
    plotSuggestions: List[PlotSuggestion] = Field(default_factory=list)
    characterInteractions: List[CharacterInteraction] = Field(default_factory=list)
    styleSuggestions: List[StyleSuggestion] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "SuggestionSet":
        return cls()


class TextAnalysis(AIModel):
    tone: str = "Unknown"
    pacing: str = "Unknown"
    readability: str = "Unknown"
    wordVariety: str = "Unknown"
    suggestions: List[str] = Field(default_factory=list)

    @classmethod
    def unavailable(cls) -> "TextAnalysis":
        return cls(
            tone="Unable to analyze",
            pacing="Unable to analyze",
            readability="Unable to analyze",
            wordVariety="Unable to analyze",
            suggestions=["Unable to generate suggestions at this time"],
        )


# -----------------------
# Interactive story
# -----------------------

DEFAULT_STORY_CHOICES = ["Continue the journey", "Ask for more details", "Change course"]


class StoryCharacter(AIModel):
    name: str
    role: str = ""
    personality: List[str] = Field(default_factory=list)


class StoryMessage(AIModel):
    sender: str
    content: str


class StoryResponse(AIModel):
    content: str = "The story continues..."
    choices: List[str] = Field(default_factory=lambda: list(DEFAULT_STORY_CHOICES))
    threadId: Optional[str] = None

    @classmethod
    def paused(cls, thread_id: Optional[str] = None) -> "StoryResponse":
        return cls(
            content="The storyteller pauses for a moment, gathering thoughts before continuing the tale...",
            choices=list(DEFAULT_STORY_CHOICES),
            threadId=thread_id,
        )


# -----------------------
# World building
# -----------------------

class ChatMessage(AIModel):
    role: str = "user"
    content: str = ""


class CharacterCreationInput(AIModel):
    name: Optional[str] = None
    role: Optional[str] = None
    genre: Optional[str] = None
    setting: Optional[str] = None
    story: Optional[str] = None
    additionalInfo: Optional[str] = None


class DetailedCharacter(AIModel):
    name: str
    role: str
    background: str = ""
    personality: List[str] = Field(default_factory=list)
    goals: List[str] = Field(default_factory=list)
    fears: List[str] = Field(default_factory=list)
    relationships: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    appearance: str = ""
    voice: str = ""
    secrets: Optional[str] = None
    quirks: List[str] = Field(default_factory=list)
    motivations: List[str] = Field(default_factory=list)
    flaws: List[str] = Field(default_factory=list)

    @classmethod
    def fallback(cls, character_input: CharacterCreationInput) -> "DetailedCharacter":
        return cls(
            name=character_input.name or "Character",
            role=character_input.role or "Character",
            background="A mysterious individual with an unclear past.",
            personality=["Adaptable", "Resourceful"],
            goals=["Survival", "Finding purpose"],
            fears=["Unknown", "Failure"],
            relationships=[],
            skills=["Resilience", "Quick thinking"],
            appearance="Has a distinctive appearance that matches their personality.",
            voice="Speaks with an authentic and engaging tone.",
        )


class GenreCreationInput(AIModel):
    userInterests: Optional[str] = None
    themes: List[str] = Field(default_factory=list)
    mood: Optional[str] = None
    targetAudience: Optional[str] = None
    inspirations: List[str] = Field(default_factory=list)
    additionalInfo: Optional[str] = None
    threadId: Optional[str] = None
    previousMessages: List[ChatMessage] = Field(default_factory=list)


class StyleGuide(AIModel):
    tone: str = ""
    pacing: str = ""
    perspective: str = ""
    dialogueStyle: str = ""


class GenreDetails(AIModel):
    name: str
    description: str = ""
    themes: List[str] = Field(default_factory=list)
    tropes: List[str] = Field(default_factory=list)
    commonSettings: List[str] = Field(default_factory=list)
    typicalCharacters: List[str] = Field(default_factory=list)
    plotStructures: List[str] = Field(default_factory=list)
    styleGuide: StyleGuide = Field(default_factory=StyleGuide)
    recommendedReading: List[str] = Field(default_factory=list)
    popularExamples: List[str] = Field(default_factory=list)
    worldbuildingElements: List[str] = Field(default_factory=list)
    threadId: Optional[str] = None


class WorldCreationInput(AIModel):
    genreContext: Optional[str] = None
    setting: Optional[str] = None
    timeframe: Optional[str] = None
    environmentType: Optional[str] = None
    culture: Optional[str] = None
    technology: Optional[str] = None
    conflicts: Optional[str] = None
    additionalInfo: Optional[str] = None
    threadId: Optional[str] = None
    previousMessages: List[ChatMessage] = Field(default_factory=list)


class WorldCulture(AIModel):
    socialStructure: str = ""
    beliefs: List[str] = Field(default_factory=list)
    customs: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)


class WorldPolitics(AIModel):
    governmentType: str = ""
    powerDynamics: str = ""
    majorFactions: List[str] = Field(default_factory=list)


class WorldEconomy(AIModel):
    resources: List[str] = Field(default_factory=list)
    trade: str = ""
    currency: str = ""


class WorldTechnology(AIModel):
    level: str = ""
    innovations: List[str] = Field(default_factory=list)
    limitations: List[str] = Field(default_factory=list)


class WorldHistory(AIModel):
    majorEvents: List[str] = Field(default_factory=list)
    legends: List[str] = Field(default_factory=list)


class MagicSystem(AIModel):
    rules: List[str] = Field(default_factory=list)
    limitations: List[str] = Field(default_factory=list)
    practitioners: str = ""


class WorldDetails(AIModel):
    name: str
    description: str = ""
    era: str = ""
    geography: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    culture: WorldCulture = Field(default_factory=WorldCulture)
    politics: WorldPolitics = Field(default_factory=WorldPolitics)
    economy: WorldEconomy = Field(default_factory=WorldEconomy)
    technology: WorldTechnology = Field(default_factory=WorldTechnology)
    conflicts: List[str] = Field(default_factory=list)
    history: WorldHistory = Field(default_factory=WorldHistory)
    magicSystem: Optional[MagicSystem] = None
    threadId: Optional[str] = None
