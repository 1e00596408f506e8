"""Server sync status as an explicit state machine."""

from enum import Enum

from pydantic import BaseModel, ConfigDict

from ..errors import InvalidTransitionError
from ..models import FULL_SYNC_STAGES, SyncStage, SyncStatus


class SyncEvent(str, Enum):
    """Events that move a server's sync state."""

    START = "start"
    ADVANCE = "advance"
    COMPLETE = "complete"
    FAIL = "fail"
    RESET = "reset"


class SyncState(BaseModel):
    """Persisted (status, stage) pair of a server."""

    model_config = ConfigDict(frozen=True)

    status: SyncStatus = SyncStatus.PENDING
    stage: SyncStage = SyncStage.NOT_STARTED


def _require_syncing(state: SyncState, event: SyncEvent) -> None:
    if state.status is not SyncStatus.SYNCING:
        raise InvalidTransitionError(f"Cannot {event.value} from {state.status.value}")


def transition(state: SyncState, event: SyncEvent, stage: SyncStage | None = None) -> SyncState:
    """Return the state after ``event``.

    START is accepted from any status; from syncing it restarts a run that
    was redelivered. ADVANCE walks the full sync stages strictly forward.
    Everything else is only valid while syncing.

    Raises:
        InvalidTransitionError: the event is not allowed in ``state``.
    """
    event = SyncEvent(event)

    if event is SyncEvent.START:
        if stage is None or stage in (SyncStage.NOT_STARTED, SyncStage.COMPLETED):
            raise InvalidTransitionError(f"START needs a sync stage, got {stage}")
        return SyncState(status=SyncStatus.SYNCING, stage=stage)

    _require_syncing(state, event)

    if event is SyncEvent.ADVANCE:
        if stage not in FULL_SYNC_STAGES or state.stage not in FULL_SYNC_STAGES:
            raise InvalidTransitionError(f"Cannot advance from {state.stage.value} to {stage}")
        if FULL_SYNC_STAGES.index(stage) <= FULL_SYNC_STAGES.index(state.stage):
            raise InvalidTransitionError(f"Cannot advance from {state.stage.value} to {stage.value}")
        return SyncState(status=SyncStatus.SYNCING, stage=stage)

    if event in (SyncEvent.COMPLETE, SyncEvent.RESET):
        return SyncState(status=SyncStatus.COMPLETED, stage=SyncStage.COMPLETED)

    # FAIL keeps the stage that was running
    return SyncState(status=SyncStatus.FAILED, stage=state.stage)
