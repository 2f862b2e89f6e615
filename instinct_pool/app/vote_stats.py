"""
=============================================================================
INSTINCT POOL - Estadísticas de Decisiones por Participante
=============================================================================
Registra aciertos y decisiones totales durante la fase ACTIVE. Los contadores
son de solo agregar: nunca retroceden, para que un fallo (o compromiso) del
operador no pueda inflar retroactivamente la elegibilidad de bono.
=============================================================================
"""

import logging

from .access_control import AccessControl
from .config import PoolConfig
from .errors import InvalidRunStatusError, OutOfRangeError, ParticipationNotFoundError
from .ledger_types import Participation, PoolState, RunStatus


logger = logging.getLogger(__name__)


class VoteStatsTracker:
    """Contadores de aciertos, alimentan el bono de WithdrawalDistributor."""

    def __init__(self, state: PoolState, access: AccessControl, config: PoolConfig):
        self.state = state
        self.access = access
        self.config = config

    def record_decision_outcome(
        self,
        caller: str,
        run_id: int,
        participant: str,
        correct_count: int,
        total_count: int,
    ) -> Participation:
        self.access.require_operator(caller)
        run = self.access.require_run(run_id)
        if run.status != RunStatus.ACTIVE:
            raise InvalidRunStatusError(f"Run #{run_id} is not active")

        participation = self.state.get_participation(run_id, participant)
        if participation is None:
            raise ParticipationNotFoundError(
                f"{participant} has no participation in run #{run_id}"
            )

        for label, value in (("correct_count", correct_count), ("total_count", total_count)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise OutOfRangeError(f"{label} must be a non-negative integer")
        if total_count > self.config.MAX_DECISIONS:
            raise OutOfRangeError(
                f"total_count {total_count} exceeds {self.config.MAX_DECISIONS} decisions"
            )
        if correct_count > total_count:
            raise OutOfRangeError(f"correct_count {correct_count} exceeds total_count {total_count}")

        if total_count < participation.total_votes:
            raise OutOfRangeError(
                f"total_count cannot decrease ({participation.total_votes} -> {total_count})"
            )
        if correct_count < participation.correct_votes:
            raise OutOfRangeError(
                f"correct_count cannot decrease ({participation.correct_votes} -> {correct_count})"
            )
        new_decisions = total_count - participation.total_votes
        new_correct = correct_count - participation.correct_votes
        if new_correct > new_decisions:
            raise OutOfRangeError(
                f"{new_correct} new correct decisions exceed {new_decisions} new decisions"
            )

        self.state.commit([
            (participation, participation.version, {
                "correct_votes": correct_count,
                "total_votes": total_count,
            }),
        ])
        logger.debug(
            "[VOTES] Run #%s %s: %s/%s correct", run_id, participant, correct_count, total_count
        )
        return participation
