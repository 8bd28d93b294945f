from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mealcache.core.keys import canonical_recipe_id

# Fields written by a summary merge-write; detail fields are never part of it
SUMMARY_FIELDS = ("id", "title", "image", "summary", "ready_in_minutes", "servings")
DETAIL_FIELDS = (
    "ingredients",
    "instructions",
    "vegetarian",
    "vegan",
    "gluten_free",
    "dairy_free",
)

DEFAULT_TITLE = "Unknown Recipe"


class Ingredient(BaseModel):
    id: int = 0
    name: str = ""
    original: str = ""
    amount: float = 0.0
    unit: str = ""

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> float:
        if value is None or isinstance(value, bool):
            return 0.0
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return float(str(value).strip())
        except ValueError:
            return 0.0


class InstructionStep(BaseModel):
    number: int
    step: str


class RecipeSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    title: str = DEFAULT_TITLE
    image: Optional[str] = None
    summary: Optional[str] = None
    ready_in_minutes: Optional[int] = None
    servings: Optional[int] = None

    @field_validator("id", mode="before")
    @classmethod
    def _canonical_id(cls, value: Any) -> int:
        return canonical_recipe_id(value)

    def summary_fields(self) -> Dict[str, Any]:
        """Fields for a summary merge-write. None values are left out so they never erase cached data."""
        data = self.model_dump(include=set(SUMMARY_FIELDS))
        return {k: v for k, v in data.items() if v is not None}


class RecipeDetail(RecipeSummary):
    ingredients: List[Ingredient] = Field(default_factory=list)
    instructions: List[InstructionStep] = Field(default_factory=list)
    vegetarian: bool = False
    vegan: bool = False
    gluten_free: bool = False
    dairy_free: bool = False

    @property
    def has_full_details(self) -> bool:
        return bool(self.ingredients) and bool(self.instructions)

    def detail_fields(self) -> Dict[str, Any]:
        """Every summary and detail field, for a detail merge-write."""
        data = self.summary_fields()
        data.update(self.model_dump(include=set(DETAIL_FIELDS), mode="json"))
        return data

    def to_summary(self) -> RecipeSummary:
        return RecipeSummary(**self.model_dump(include=set(SUMMARY_FIELDS)))


class CacheEntry(BaseModel):
    """A persisted recipe document. May hold a summary only, or summary plus detail."""

    id: int
    title: Optional[str] = None
    image: Optional[str] = None
    summary: Optional[str] = None
    ready_in_minutes: Optional[int] = None
    servings: Optional[int] = None
    ingredients: Optional[List[Ingredient]] = None
    instructions: Optional[List[InstructionStep]] = None
    vegetarian: Optional[bool] = None
    vegan: Optional[bool] = None
    gluten_free: Optional[bool] = None
    dairy_free: Optional[bool] = None
    cached_at: Optional[datetime] = None
    detail_cached_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _canonical_id(cls, value: Any) -> int:
        return canonical_recipe_id(value)

    @property
    def has_full_details(self) -> bool:
        return bool(self.ingredients) and bool(self.instructions)

    def to_summary(self) -> RecipeSummary:
        return RecipeSummary(
            id=self.id,
            title=self.title or DEFAULT_TITLE,
            image=self.image,
            summary=self.summary,
            ready_in_minutes=self.ready_in_minutes,
            servings=self.servings,
        )

    def to_detail(self) -> RecipeDetail:
        return RecipeDetail(
            id=self.id,
            title=self.title or DEFAULT_TITLE,
            image=self.image,
            summary=self.summary,
            ready_in_minutes=self.ready_in_minutes,
            servings=self.servings,
            ingredients=self.ingredients or [],
            instructions=self.instructions or [],
            vegetarian=bool(self.vegetarian),
            vegan=bool(self.vegan),
            gluten_free=bool(self.gluten_free),
            dairy_free=bool(self.dairy_free),
        )


class SearchFilters(BaseModel):
    cuisine: Optional[str] = None
    diet: Optional[str] = None
    number: int = Field(default=10, ge=1, le=100)


class UserFavorite(BaseModel):
    user_id: str
    recipe_id: int
    favorited_at: datetime
    title: Optional[str] = None
    image: Optional[str] = None


class ViewRecord(BaseModel):
    user_id: str
    recipe_id: int
    viewed_at: datetime
    view_count: int = 1


# --- Operation results ---


class FetchState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    CACHED = "cached"
    FAILED = "failed"
    QUOTA_HALTED = "quota_halted"


@dataclass
class ChunkResult:
    index: int
    size: int
    committed: bool
    error: Optional[str] = None


@dataclass
class BatchWriteReport:
    """Outcome of a chunked batch write. Chunks commit independently."""

    chunks: List[ChunkResult] = field(default_factory=list)
    failed_ids: List[int] = field(default_factory=list)

    @property
    def written(self) -> int:
        return sum(c.size for c in self.chunks if c.committed)

    @property
    def all_committed(self) -> bool:
        return all(c.committed for c in self.chunks)

    def to_dict(self) -> dict:
        return {
            "written": self.written,
            "chunks": [
                {"index": c.index, "size": c.size, "committed": c.committed, "error": c.error}
                for c in self.chunks
            ],
            "failed_ids": list(self.failed_ids),
        }


@dataclass
class BackgroundRunStatus:
    """Snapshot of one background detail-population run."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    halted_early: bool = False
    outcomes: Dict[int, FetchState] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "halted_early": self.halted_early,
            "outcomes": {str(k): v.value for k, v in self.outcomes.items()},
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class CacheStats:
    total: int = 0
    with_details: int = 0

    @property
    def basic_only(self) -> int:
        return max(0, self.total - self.with_details)

    @property
    def cache_percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(100 * self.with_details / self.total)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "with_details": self.with_details,
            "basic_only": self.basic_only,
            "cache_percentage": self.cache_percentage,
        }


@dataclass
class DetailLookup:
    detail: RecipeDetail
    from_cache: bool
    # False when the remote fetch succeeded but the cache write did not
    persisted: bool = True


@dataclass
class BrowseResult:
    recipes: List[RecipeSummary]
    source: str  # "remote" or "cache"
