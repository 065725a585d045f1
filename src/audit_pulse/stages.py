"""
Static audit pipeline stages and per-stage state.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class StageCategory(str, Enum):
    """Analysis area a stage belongs to."""
    CONTENT = "content"
    TECHNICAL = "technical"
    LOCAL = "local"
    UX = "ux"


class StageStatus(str, Enum):
    """Status of one stage within one job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class StageDescriptor(BaseModel):
    """Immutable description of one pipeline stage, shared by all jobs."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    category: StageCategory
    factors: int = Field(ge=0)    # Units of work the stage analyzes


class StageState(BaseModel):
    """Mutable-by-replacement record of one stage's progress."""
    model_config = ConfigDict(frozen=True)

    stage: StageDescriptor
    status: StageStatus = StageStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)


AUDIT_STAGES: tuple[StageDescriptor, ...] = (
    StageDescriptor(
        id="content",
        name="Content Quality Analysis",
        description="Analyzing content depth, E-E-A-T signals, and user engagement",
        category=StageCategory.CONTENT,
        factors=35,
    ),
    StageDescriptor(
        id="technical",
        name="Technical SEO Analysis",
        description="Core Web Vitals, technical foundation, and accessibility",
        category=StageCategory.TECHNICAL,
        factors=40,
    ),
    StageDescriptor(
        id="local",
        name="Local SEO Analysis",
        description="NAP consistency, Google My Business, and local citations",
        category=StageCategory.LOCAL,
        factors=35,
    ),
    StageDescriptor(
        id="ux",
        name="UX Performance Analysis",
        description="User experience, performance metrics, and mobile optimization",
        category=StageCategory.UX,
        factors=30,
    ),
)

TOTAL_FACTORS = sum(stage.factors for stage in AUDIT_STAGES)
