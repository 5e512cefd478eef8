import asyncio
import random
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Tuple

ALLOWED_SIDES = (4, 6, 8, 10, 12, 20, 100)
MIN_DICE = 1
MAX_DICE = 20


@dataclass(frozen=True)
class DiceRoll:
    count: int
    sides: int
    modifier: int
    rolls: List[int] = field(default_factory=list)
    total: int = 0

    @property
    def notation(self) -> str:
        return f"{self.count}d{self.sides}{format_modifier(self.modifier)}"


def format_modifier(modifier: int) -> str:
    if not modifier:
        return ""
    return f"+{modifier}" if modifier > 0 else str(modifier)


def parse_dice(expr: str) -> Tuple[int, int, int]:
    match = re.fullmatch(r"(\d+)d(\d+)([+-]\d+)?", expr.strip().lower())
    if not match:
        raise ValueError(f"Invalid dice expression: {expr}")
    count = int(match.group(1))
    sides = int(match.group(2))
    bonus = int(match.group(3) or 0)
    return count, sides, bonus


def roll(count: int, sides: int, modifier: int = 0, rng: Optional[random.Random] = None) -> DiceRoll:
    if not MIN_DICE <= count <= MAX_DICE:
        raise ValueError(f"Dice count must be between {MIN_DICE} and {MAX_DICE}")
    if sides not in ALLOWED_SIDES:
        raise ValueError(f"Unsupported die: d{sides}")
    rng = rng or random
    rolls = [rng.randint(1, sides) for _ in range(count)]
    return DiceRoll(
        count=count,
        sides=sides,
        modifier=modifier,
        rolls=rolls,
        total=sum(rolls) + modifier,
    )


def roll_dice(expr: str, rng: Optional[random.Random] = None) -> DiceRoll:
    count, sides, bonus = parse_dice(expr)
    return roll(count, sides, bonus, rng=rng)


def format_roll(result: DiceRoll) -> str:
    mod_text = f" {format_modifier(result.modifier)}" if result.modifier else ""
    rolls_text = ", ".join(str(value) for value in result.rolls)
    subtotal = f" ({sum(result.rolls)}{mod_text})" if mod_text else ""
    return (
        f"🎲 Rolled {result.count}d{result.sides}{mod_text}: "
        f"[{rolls_text}]{subtotal} = **{result.total}**"
    )


async def animate_roll(
    result: DiceRoll,
    frames: int,
    duration: float,
    rng: Optional[random.Random] = None,
) -> AsyncIterator[List[int]]:
    """Yield random faces for a tumbling-dice effect, then the real faces.

    Purely cosmetic: the result has already been decided and is never read
    for anything but its shape and its final faces.
    """
    rng = rng or random.Random()
    delay = duration / max(frames, 1)
    for _ in range(frames):
        yield [rng.randint(1, result.sides) for _ in result.rolls]
        await asyncio.sleep(delay)
    yield list(result.rolls)
