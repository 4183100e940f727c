"""
Battle record model: the per-match entity the state machine fills in.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from smash_tracker.errors import FrozenRecordError


# Placeholder values for fields that could not be resolved
UNKNOWN_NAME = "unknown"
UNKNOWN_NUMBER = -1


class Rule(str, Enum):
    TIME = "Time"
    STOCK = "Stock"
    STAMINA = "Stamina"
    UNKNOWN = "Unknown"


class PlayerGroup(str, Enum):
    UNKNOWN = "Unknown"
    RED = "Red"
    BLUE = "Blue"
    YELLOW = "Yellow"
    GREEN = "Green"


class FieldKind(Enum):
    PLAYER_COUNT = "player_count"
    RULE = "rule"
    MAX_TIME = "max_time"
    MAX_STOCK = "max_stock"
    MAX_HP = "max_hp"
    CHARACTER = "character"
    STOCK = "stock"
    ORDER = "order"
    POWER = "power"


@dataclass(frozen=True)
class FieldObservation:
    """One noisy reading of one battle attribute."""
    kind: FieldKind
    value: Any
    confidence: float
    timestamp: float
    slot: Optional[int] = None
    raw: Optional[str] = None

    def __repr__(self):
        where = f"[{self.slot}]" if self.slot is not None else ""
        return f"Obs({self.kind.value}{where}={self.value!r}, conf={self.confidence:.2f})"


class BattleRecord:
    """
    One match, from the "match starting" transition to finalization.

    Per-player lists are allocated when the player count is fixed and keep
    exactly player_count entries from then on, indexed by slot. After
    finalize() the record rejects every assignment.
    """

    PER_PLAYER_FIELDS = (
        'chara_list', 'group_list',
        'max_stock_list', 'max_hp_list',
        'stock_list', 'order_list', 'power_list',
    )

    def __init__(self, start_time: datetime):
        self._finalized = False
        self.start_time = start_time
        self.end_time: Optional[datetime] = None
        self.player_count: Optional[int] = None
        self.rule_name = Rule.UNKNOWN
        self.max_time = UNKNOWN_NUMBER
        self.chara_list: List[str] = []
        self.group_list: List[PlayerGroup] = []
        self.max_stock_list: List[int] = []
        self.max_hp_list: List[int] = []
        self.stock_list: List[int] = []
        self.order_list: List[int] = []
        self.power_list: List[int] = []
        self.unresolved_fields: List[str] = []

    def __setattr__(self, name, value):
        if getattr(self, '_finalized', False):
            raise FrozenRecordError(f"BattleRecord is finalized, cannot set {name}")
        object.__setattr__(self, name, value)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def fix_player_count(self, player_count: int):
        """Fix the player count and allocate per-player lists (once only)."""
        if player_count < 1:
            raise ValueError(f"player_count must be positive, got {player_count}")
        if self.player_count is not None:
            if self.player_count != player_count:
                raise ValueError(
                    f"player_count already fixed at {self.player_count}, got {player_count}")
            return

        self.player_count = player_count
        self.chara_list = [UNKNOWN_NAME] * player_count
        self.group_list = [PlayerGroup.UNKNOWN] * player_count
        for name in ('max_stock_list', 'max_hp_list', 'stock_list', 'order_list', 'power_list'):
            setattr(self, name, [UNKNOWN_NUMBER] * player_count)

    def set_slot(self, field: str, slot: int, value):
        if self._finalized:
            raise FrozenRecordError(f"BattleRecord is finalized, cannot set {field}[{slot}]")
        if field not in self.PER_PLAYER_FIELDS:
            raise KeyError(f"Not a per-player field: {field}")
        if self.player_count is None:
            raise ValueError("player_count must be fixed before per-player fields")
        if not 0 <= slot < self.player_count:
            raise IndexError(f"Slot {slot} out of range for {self.player_count} players")
        getattr(self, field)[slot] = value

    def mark_unresolved(self, field: str):
        if field not in self.unresolved_fields:
            self.unresolved_fields.append(field)

    def finalize(self, end_time: Optional[datetime] = None):
        """Freeze the record. A record can only be finalized once."""
        if self._finalized:
            raise FrozenRecordError("BattleRecord was already finalized")
        if end_time is not None:
            self.end_time = end_time
        for name in self.PER_PLAYER_FIELDS:
            setattr(self, name, tuple(getattr(self, name)))
        self.unresolved_fields = tuple(self.unresolved_fields)
        self._finalized = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_time': self.start_time,
            'end_time': self.end_time,
            'player_count': self.player_count,
            'rule_name': self.rule_name.value,
            'max_time': self.max_time,
            'chara_list': list(self.chara_list),
            'group_list': [g.value for g in self.group_list],
            'max_stock_list': list(self.max_stock_list),
            'max_hp_list': list(self.max_hp_list),
            'stock_list': list(self.stock_list),
            'order_list': list(self.order_list),
            'power_list': list(self.power_list),
            'unresolved_fields': list(self.unresolved_fields),
        }

    def __repr__(self):
        state = "final" if self._finalized else "open"
        return (f"BattleRecord({state}, players={self.player_count}, "
                f"rule={self.rule_name.value}, chara={list(self.chara_list)})")
