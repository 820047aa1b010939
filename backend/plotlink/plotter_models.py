from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# AxiDraw pen servo range, in EBB servo units (1/12 MHz pulse widths)
PEN_SERVO_MIN = 7500
PEN_SERVO_MAX = 28000


def pen_pct_to_pos(pct: float, servo_min: int = PEN_SERVO_MIN, servo_max: int = PEN_SERVO_MAX) -> int:
    """Convert a pen height percentage (0 = fully up) into a servo position."""
    return round(servo_min + (servo_max - servo_min) * pct / 100.0)


def format_duration(seconds: float) -> str:
    """Format a duration as H:MM:SS."""
    total = max(0, int(round(seconds)))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


class Vec2(BaseModel):
    x: float
    y: float


class Block(BaseModel):
    """A constant-acceleration segment of an XY motion."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    accel: float
    duration: float = Field(ge=0)
    v_initial: float = Field(alias="vInitial")
    p1: Vec2
    p2: Vec2


class XYMotion(BaseModel):
    model_config = ConfigDict(frozen=True)

    t: Literal["XYMotion"] = "XYMotion"
    blocks: List[Block] = Field(default_factory=list)

    def duration(self) -> float:
        return sum(block.duration for block in self.blocks)


class PenMotion(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    t: Literal["PenMotion"] = "PenMotion"
    initial_pos: int = Field(alias="initialPos")
    final_pos: int = Field(alias="finalPos")
    pen_duration: float = Field(alias="duration", ge=0)

    def duration(self) -> float:
        return self.pen_duration


Motion = Annotated[Union[XYMotion, PenMotion], Field(discriminator="t")]


class Plan(BaseModel):
    """An ordered, read-only sequence of motions submitted as one plot."""
    model_config = ConfigDict(frozen=True)

    motions: List[Motion]

    @classmethod
    def deserialize(cls, data: Any) -> "Plan":
        """Build a plan from client JSON; raises pydantic.ValidationError."""
        return cls.model_validate(data)

    def duration(self) -> float:
        return sum(motion.duration() for motion in self.motions)

    def first_pen_motion(self) -> Optional[PenMotion]:
        return next((m for m in self.motions if isinstance(m, PenMotion)), None)


class SetPenHeightCommand(BaseModel):
    height: int
    rate: int


class PlotStatus(BaseModel):
    device_path: Optional[str] = None
    plotting: bool = False
    estimated_duration_seconds: Optional[float] = None


def dev_message(path: Optional[str]) -> Dict[str, Any]:
    return {"c": "dev", "p": {"path": path}}


def progress_message(motion_idx: int) -> Dict[str, Any]:
    return {"c": "progress", "p": {"motionIdx": motion_idx}}


def finished_message() -> Dict[str, Any]:
    return {"c": "finished"}


def cancelled_message() -> Dict[str, Any]:
    return {"c": "cancelled"}


def failed_message(error: str) -> Dict[str, Any]:
    return {"c": "failed", "p": {"error": error}}
