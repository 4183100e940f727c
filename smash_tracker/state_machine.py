"""
Battle state machine.

Walks each match through IDLE -> MATCH_STARTING -> IN_PROGRESS ->
MATCH_ENDING -> IDLE, debouncing scene changes and feeding extracted
observations into the voting aggregators. Every scene change must persist
for `debounce_frames` classified frames before it counts.

The machine is single-threaded: only one caller may drive process().
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from smash_tracker.config import MachineConfig
from smash_tracker.errors import ExtractionError
from smash_tracker.extract import ExtractionContext, FieldExtractor
from smash_tracker.frames import Frame
from smash_tracker.record import UNKNOWN_NUMBER, BattleRecord, FieldKind, FieldObservation, PlayerGroup, Rule
from smash_tracker.scenes import SceneClassification, SceneMatcher
from smash_tracker.templates import SceneKind
from smash_tracker.voting import DecreasingCounter, DiscreteVote, NumericConsensus, RunDebounce


logger = logging.getLogger(__name__)


class MachineState(Enum):
    IDLE = 1
    MATCH_STARTING = 2
    IN_PROGRESS = 3
    MATCH_ENDING = 4


START_SCENES = frozenset({SceneKind.READY_TO_FIGHT, SceneKind.MATCHING})
IDENTITY_SCENES = frozenset({SceneKind.MATCHING, SceneKind.VERSUS})
IN_GAME_SCENES = frozenset({SceneKind.GAME_START, SceneKind.GAME_PLAYING})
ABANDON_SCENES = frozenset({SceneKind.READY_TO_FIGHT, SceneKind.DIALOG})

CANDIDATES = {
    MachineState.IDLE: START_SCENES,
    MachineState.MATCH_STARTING: START_SCENES | IDENTITY_SCENES | IN_GAME_SCENES,
    MachineState.IN_PROGRESS: IN_GAME_SCENES | ABANDON_SCENES | {SceneKind.GAME_END, SceneKind.LOADING},
    MachineState.MATCH_ENDING: START_SCENES | {SceneKind.RESULT, SceneKind.GAME_END,
                                               SceneKind.LOADING, SceneKind.DIALOG},
}

# Match caps that the versus screen shows for each rule
RULE_CAPS = {
    Rule.TIME: (FieldKind.MAX_TIME,),
    Rule.STOCK: (FieldKind.MAX_TIME, FieldKind.MAX_STOCK),
    Rule.STAMINA: (FieldKind.MAX_TIME, FieldKind.MAX_STOCK, FieldKind.MAX_HP),
    Rule.UNKNOWN: (),
}

STOCK_RULES = (Rule.STOCK, Rule.STAMINA)


@dataclass(frozen=True)
class StepResult:
    """
    Outcome of one process() call.

    classification is None when the frame was not classified (reaffirm
    interval, extraction failure). event names the transition taken, if any.
    """
    state: MachineState
    classification: Optional[SceneClassification]
    event: Optional[str] = None
    observations: Tuple[FieldObservation, ...] = ()


class BattleStateMachine:
    """
    Turn a stream of normalized frames into finalized BattleRecords.

    Args:
        matcher: SceneMatcher for the loaded bundle
        extractor: FieldExtractor for the loaded bundle
        config: MachineConfig tuning values
        on_finalized: Callback(record) for every finalized record
    """

    def __init__(self, matcher: SceneMatcher, extractor: FieldExtractor,
                 config: Optional[MachineConfig] = None,
                 on_finalized: Optional[Callable[[BattleRecord], None]] = None):
        self.matcher = matcher
        self.extractor = extractor
        self.config = config or MachineConfig()
        self.on_finalized = on_finalized
        self.matches_finalized = 0
        self.matches_aborted = 0
        self._reset()

    # Lifecycle

    def _reset(self):
        self.state = MachineState.IDLE
        self.record: Optional[BattleRecord] = None
        self._debounce = RunDebounce(self.config.debounce_frames)
        self._frames_in_state = 0
        self._last_recognized = None

        # MATCH_STARTING
        self._votes: Dict[FieldKind, DiscreteVote] = {}
        self._chara_votes: Dict[int, DiscreteVote] = defaultdict(self._new_vote)
        self._has_identity = False
        self._seen_versus = False
        self._off_versus = 0

        # IN_PROGRESS / MATCH_ENDING
        self._stock_counters: Dict[int, DecreasingCounter] = {}
        self._order_votes: Dict[int, DiscreteVote] = {}
        self._stock_votes: Dict[int, DiscreteVote] = {}
        self._power: Dict[int, NumericConsensus] = {}
        self._seen_result = False

    def _new_vote(self) -> DiscreteVote:
        return DiscreteVote(window=self.config.vote_window, min_run=self.config.vote_min_run,
                            majority=self.config.vote_majority)

    def _set_state(self, state: MachineState):
        logger.info(f"{self.state.name} -> {state.name}")
        self.state = state
        self._debounce.reset()
        self._frames_in_state = 0

    def _start_match(self, timestamp: float):
        self._reset()
        self.record = BattleRecord(datetime.fromtimestamp(timestamp))
        self._votes = {kind: self._new_vote() for kind in (
            FieldKind.PLAYER_COUNT, FieldKind.RULE,
            FieldKind.MAX_TIME, FieldKind.MAX_STOCK, FieldKind.MAX_HP)}
        self._set_state(MachineState.MATCH_STARTING)
        logger.info(f"Match starting at {self.record.start_time}")

    def abort(self, reason: str = "aborted"):
        """Discard the in-progress record (nothing is committed) and return to IDLE."""
        if self.state == MachineState.IDLE:
            return
        logger.info(f"Match aborted in {self.state.name}: {reason}")
        self.matches_aborted += 1
        self._reset()

    def on_source_lost(self):
        self.abort("source lost")

    def flush(self) -> Optional[BattleRecord]:
        """
        End of stream: finalize a match that already reached its result
        screen, abort anything else.
        """
        if self.state == MachineState.MATCH_ENDING and self._seen_result:
            return self._finalize()
        self.abort("end of stream")
        return None

    # Frame processing

    def process(self, frame: Frame) -> StepResult:
        """
        Process one normalized frame.

        Returns:
            StepResult: state after the frame, the classification used (or
            None if the frame was skipped), the transition event and the
            observations extracted from the frame
        """
        self._frames_in_state += 1
        if self.state == MachineState.IDLE:
            return self._process_idle(frame)
        elif self.state == MachineState.MATCH_STARTING:
            return self._process_match_starting(frame)
        elif self.state == MachineState.IN_PROGRESS:
            return self._process_in_progress(frame)
        else:
            return self._process_match_ending(frame)

    def _classify(self, frame: Frame) -> SceneClassification:
        classification = self.matcher.classify(frame, CANDIDATES[self.state])
        if classification.matched:
            self._last_recognized = frame.timestamp
        return classification

    def _context(self) -> ExtractionContext:
        record = self.record
        max_stock = None
        if record.player_count and record.max_stock_list and record.max_stock_list[0] != UNKNOWN_NUMBER:
            max_stock = record.max_stock_list[0]
        rule = record.rule_name
        if self.state == MachineState.MATCH_STARTING:
            rule = self._votes[FieldKind.RULE].value or Rule.UNKNOWN
        return ExtractionContext(player_count=record.player_count, rule=rule, max_stock=max_stock)

    def _extract(self, frame: Frame, classification: SceneClassification):
        """Run field extraction. Returns None when the frame has to be skipped."""
        try:
            return tuple(self.extractor.extract(frame, classification, self._context()))
        except ExtractionError as e:
            logger.warning(f"Frame {frame.index} skipped, extraction failed: {e}")
            return None

    def _process_idle(self, frame: Frame) -> StepResult:
        classification = self._classify(frame)
        fired = self._debounce.feed(classification.scene, frame.timestamp)
        if fired in START_SCENES:
            self._start_match(self._debounce.started_at)
            return StepResult(self.state, classification, "match_starting")
        return StepResult(self.state, classification)

    def _process_match_starting(self, frame: Frame) -> StepResult:
        classification = self._classify(frame)
        scene = classification.scene

        observations = ()
        if scene in IDENTITY_SCENES:
            observations = self._extract(frame, classification)
            if observations is None:
                return StepResult(self.state, None)
            if self._ingest_identity(observations, frame.timestamp):
                self._debounce.feed(scene, frame.timestamp)
                return StepResult(self.state, classification, "cancelled", observations)

        if scene == SceneKind.VERSUS:
            self._seen_versus = True
            self._off_versus = 0
        elif self._seen_versus:
            self._off_versus += 1

        fired = self._debounce.feed(scene, frame.timestamp)
        if fired == SceneKind.READY_TO_FIGHT and self._has_identity:
            logger.info("Matchmaking cancelled, starting over")
            self._start_match(self._debounce.started_at)
            return StepResult(self.state, classification, "cancelled", observations)

        if fired in IN_GAME_SCENES:
            if self.record.player_count is None:
                self.abort("match started before the player count was known")
                return StepResult(self.state, classification, "aborted", observations)
            self._enter_in_progress(frame)
            return StepResult(self.state, classification, "in_progress", observations)

        if self._identity_complete():
            self._enter_in_progress(frame)
            return StepResult(self.state, classification, "in_progress", observations)

        return StepResult(self.state, classification, None, observations)

    def _ingest_identity(self, observations, timestamp: float) -> bool:
        """
        Feed identity votes. Returns True when a new player count restarted the record.
        """
        for obs in observations:
            if obs.kind == FieldKind.CHARACTER:
                self._chara_votes[obs.slot].add(obs.value)
            elif obs.kind in self._votes:
                self._votes[obs.kind].add(obs.value)
            else:
                continue
            if obs.value is not None:
                self._has_identity = True

        player_count = self._votes[FieldKind.PLAYER_COUNT].value
        if player_count is None or player_count == self.record.player_count:
            return False

        restarted = self.record.player_count is not None
        if restarted:
            # Queue changed without a sustained READY_TO_FIGHT in between
            logger.info(f"Player count changed from {self.record.player_count} to {player_count}, starting over")
            self._start_match(timestamp)
            self._votes[FieldKind.PLAYER_COUNT].add(player_count)
            self._has_identity = True
        self.record.fix_player_count(player_count)
        logger.info(f"Player count: {player_count}")
        return restarted

    def _identity_complete(self) -> bool:
        if self.record.player_count is None or not self._votes[FieldKind.RULE].resolved:
            return False
        left_versus = self._seen_versus and self._off_versus >= self.config.debounce_frames
        all_characters = all(self._chara_votes[slot].resolved for slot in range(self.record.player_count))
        return all_characters or left_versus

    def _enter_in_progress(self, frame: Frame):
        """Freeze the match identity; whatever is still unresolved becomes a placeholder."""
        record = self.record

        rule = self._votes[FieldKind.RULE].value
        if rule is None:
            record.mark_unresolved('rule_name')
            rule = Rule.UNKNOWN
        record.rule_name = rule

        for kind in RULE_CAPS[rule]:
            value = self._votes[kind].value
            if kind == FieldKind.MAX_TIME:
                if value is None:
                    record.mark_unresolved('max_time')
                else:
                    record.max_time = value
                continue

            field_name = 'max_stock_list' if kind == FieldKind.MAX_STOCK else 'max_hp_list'
            if value is None:
                record.mark_unresolved(field_name)
                continue
            for slot in range(record.player_count):
                record.set_slot(field_name, slot, value)

        for slot in range(record.player_count):
            chara = self._chara_votes[slot].value
            if chara is None:
                record.mark_unresolved(f'chara_list[{slot}]')
            else:
                record.set_slot('chara_list', slot, chara)

        if record.player_count == 2 and rule in STOCK_RULES:
            self._stock_counters = {slot: DecreasingCounter() for slot in range(2)}

        self._last_recognized = frame.timestamp
        self._set_state(MachineState.IN_PROGRESS)
        logger.info(f"Match in progress: {record.player_count} players, rule {rule.value}, "
                    f"characters {list(record.chara_list)}")

    def _in_progress_limit(self) -> float:
        if self.record.max_time != UNKNOWN_NUMBER and self.record.max_time > 0:
            return self.record.max_time + self.config.in_progress_grace
        return self.config.in_progress_timeout

    def _process_in_progress(self, frame: Frame) -> StepResult:
        # Sample sparsely until an exit scene shows up, then every frame until the debounce settles
        dense = self._debounce.current in ABANDON_SCENES or self._debounce.current == SceneKind.GAME_END
        if not dense and (self._frames_in_state - 1) % self.config.reaffirm_interval != 0:
            return self._check_timeout(frame, StepResult(self.state, None))

        classification = self._classify(frame)
        scene = classification.scene

        observations = ()
        if scene == SceneKind.GAME_PLAYING and self._stock_counters:
            observations = self._extract(frame, classification)
            if observations is None:
                return self._check_timeout(frame, StepResult(self.state, None))
            for obs in observations:
                if obs.kind == FieldKind.STOCK and obs.slot in self._stock_counters:
                    self._stock_counters[obs.slot].add(obs.value)

        fired = self._debounce.feed(scene, frame.timestamp)
        if fired == SceneKind.GAME_END:
            self.record.end_time = datetime.fromtimestamp(self._debounce.started_at)
            self._enter_match_ending()
            return StepResult(self.state, classification, "game_end", observations)
        if fired in ABANDON_SCENES:
            self.abort(f"{fired.value} during match")
            return StepResult(self.state, classification, "aborted", observations)

        return self._check_timeout(frame, StepResult(self.state, classification, None, observations))

    def _check_timeout(self, frame: Frame, result: StepResult) -> StepResult:
        silent_for = frame.timestamp - self._last_recognized
        if silent_for > self._in_progress_limit():
            self.abort(f"no scene recognized for {silent_for:.0f}s")
            return StepResult(self.state, result.classification, "aborted", result.observations)
        return result

    def _enter_match_ending(self):
        player_count = self.record.player_count
        self._order_votes = {slot: self._new_vote() for slot in range(player_count)}
        self._stock_votes = {slot: self._new_vote() for slot in range(player_count)}
        self._power = {
            slot: NumericConsensus(window=self.config.power_window,
                                   tolerance=self.config.power_tolerance,
                                   minimum=self.config.min_power)
            for slot in range(player_count)
        }
        self._set_state(MachineState.MATCH_ENDING)
        logger.info(f"Game end at {self.record.end_time}")

    def _process_match_ending(self, frame: Frame) -> StepResult:
        classification = self._classify(frame)
        scene = classification.scene

        observations = ()
        if scene == SceneKind.RESULT:
            observations = self._extract(frame, classification)
            if observations is None:
                return StepResult(self.state, None)
            self._seen_result = True
            for obs in observations:
                if obs.slot is None or obs.slot not in self._order_votes:
                    continue
                if obs.kind == FieldKind.ORDER:
                    self._order_votes[obs.slot].add(obs.value)
                elif obs.kind == FieldKind.POWER:
                    self._power[obs.slot].add(obs.value)
                elif obs.kind == FieldKind.STOCK:
                    self._stock_votes[obs.slot].add(obs.value)

        fired = self._debounce.feed(scene, frame.timestamp)
        if fired in START_SCENES:
            # The next match is already starting
            started_at = self._debounce.started_at
            self._finalize()
            self._start_match(started_at)
            return StepResult(self.state, classification, "finalized", observations)

        if self._results_complete() or self._frames_in_state >= self.config.result_window_frames:
            self._finalize()
            return StepResult(self.state, classification, "finalized", observations)

        return StepResult(self.state, classification, None, observations)

    def _results_complete(self) -> bool:
        return all(
            self._order_votes[slot].resolved and self._power[slot].count >= self.config.vote_min_run
            for slot in self._order_votes
        )

    def _finalize(self) -> BattleRecord:
        record = self.record
        player_count = record.player_count

        orders = {slot: vote.value for slot, vote in self._order_votes.items()}
        if player_count == 2:
            known = [slot for slot in (0, 1) if orders.get(slot) is not None]
            if len(known) == 1:
                other = 1 - known[0]
                orders[other] = 2 if orders[known[0]] == 1 else 1

        for slot in range(player_count):
            if orders.get(slot) is not None:
                record.set_slot('order_list', slot, orders[slot])
            else:
                record.mark_unresolved(f'order_list[{slot}]')

            power = self._power[slot].value if slot in self._power else None
            if power is not None:
                record.set_slot('power_list', slot, power)
            else:
                record.mark_unresolved(f'power_list[{slot}]')

            stock = self._stock_votes[slot].value if slot in self._stock_votes else None
            if stock is None and slot in self._stock_counters:
                stock = self._stock_counters[slot].value
            if player_count == 2 and record.rule_name in STOCK_RULES and orders.get(slot) == 2:
                stock = 0
            if stock is not None:
                record.set_slot('stock_list', slot, stock)
            elif record.rule_name in STOCK_RULES:
                record.mark_unresolved(f'stock_list[{slot}]')

        if player_count == 2:
            record.set_slot('group_list', 0, PlayerGroup.RED)
            record.set_slot('group_list', 1, PlayerGroup.BLUE)

        record.finalize()
        self.matches_finalized += 1
        logger.info(f"Match finalized: {record}")
        if record.unresolved_fields:
            logger.info(f"Unresolved fields: {', '.join(record.unresolved_fields)}")

        self._reset()
        if self.on_finalized:
            self.on_finalized(record)
        return record
