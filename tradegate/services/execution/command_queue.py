"""Command queue: enqueue approved actions, dispatch them to the polling agent.

State machine: QUEUED -> DISPATCHED -> SUCCESS | FAILED, and QUEUED -> FAILED
when a command outlives its expiry before anyone polls for it. The atomic
claim lives in the store; this layer adds the poll protocol and logging.
"""

from __future__ import annotations

import uuid
from datetime import timedelta

from tradegate.infrastructure.logging.logging import get_logger
from tradegate.infrastructure.storage.store import Store
from tradegate.infrastructure.utils.timeutils import Clock, utc_now
from tradegate.models.errors import NotFoundError
from tradegate.models.trade_models import Command, CommandResult, CommandStatus, CommandType

NOOP_TTL = timedelta(seconds=2)


class CommandQueue:
    def __init__(self, store: Store, *, noop_ttl: timedelta = NOOP_TTL, clock: Clock = utc_now) -> None:
        self._store = store
        self._noop_ttl = noop_ttl
        self._now = clock
        self._log = get_logger("command_queue")

    def enqueue(self, cmd: Command) -> Command:
        stored = self._store.enqueue_command(cmd)
        self._log.info(
            "command_queued",
            command_id=stored.id,
            account_id=stored.account_id,
            type=stored.type.value,
            symbol=stored.symbol,
            side=stored.side,
        )
        return stored

    def next_queued(self, account_id: str) -> Command:
        """Claim the oldest valid QUEUED command. Raises NotFoundError when none."""
        cmd = self._store.next_queued_command(account_id)
        self._log.info("command_dispatched", command_id=cmd.id, account_id=account_id, type=cmd.type.value)
        return cmd

    def mark_result(self, result: CommandResult) -> Command:
        cmd = self._store.mark_command_result(result)
        log = self._log.info if cmd.status == CommandStatus.SUCCESS else self._log.warning
        log(
            "command_result",
            command_id=cmd.id,
            account_id=cmd.account_id,
            status=cmd.status.value if cmd.status else None,
            broker_ticket=cmd.broker_ticket,
            error_code=cmd.error_code,
        )
        return cmd

    def noop(self, account_id: str) -> Command:
        return Command(
            id=str(uuid.uuid4()),
            account_id=account_id,
            type=CommandType.NOOP,
            expires_at=self._now() + self._noop_ttl,
        )

    def poll(self, account_id: str) -> Command:
        """Agent poll: the dispatched command, or a short-lived NOOP placeholder."""
        try:
            return self.next_queued(account_id)
        except NotFoundError:
            return self.noop(account_id)
