from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Optional, Union, Iterator

from ravendb_subscriptions.documents.commands.batches import CommandData, CommandType
from ravendb_subscriptions.exceptions.exceptions import DeferredCommandConflictException


class IdTypeAndName:
    def __init__(self, key: str, command_type: CommandType, name: Optional[str]):
        self.key = key
        self.command_type = command_type
        self.name = name

    def __eq__(self, other):
        if other is None or type(self) != type(other):
            return False
        other: IdTypeAndName
        return self.key == other.key and self.command_type == other.command_type and self.name == other.name

    def __hash__(self):
        return hash((self.key, self.command_type, self.name))

    def __repr__(self):
        return f"IdTypeAndName({self.key}, {self.command_type}, {self.name})"

    @classmethod
    def create(cls, key: str, command_type: CommandType, name: Union[None, str]) -> IdTypeAndName:
        return cls(key, command_type, name)

    @classmethod
    def of(cls, command: CommandData) -> IdTypeAndName:
        return cls(command.key, command.command_type, command.name)


class FlushAttempt:
    """
    Snapshot of the ledger handed to a save. The ledger keeps every entry until the attempt is confirmed,
    a failed attempt stays inspectable through ``DeferredCommandLedger.last_failed_flush``.
    """

    class Status(Enum):
        PENDING = "Pending"
        CONFIRMED = "Confirmed"
        FAILED = "Failed"

        def __str__(self):
            return self.value

    def __init__(self, commands: List[CommandData]):
        self.commands = commands
        self.status = FlushAttempt.Status.PENDING
        self.error: Optional[BaseException] = None

    @property
    def keys(self) -> List[IdTypeAndName]:
        return [IdTypeAndName.of(command) for command in self.commands]

    def __len__(self):
        return len(self.commands)

    def __repr__(self):
        return f"FlushAttempt({self.status}, {len(self.commands)} commands)"


class DeferredCommandLedger:
    _ATTACHMENT_COMMANDS = (
        CommandType.ATTACHMENT_PUT,
        CommandType.ATTACHMENT_DELETE,
        CommandType.ATTACHMENT_MOVE,
        CommandType.ATTACHMENT_COPY,
    )

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("DeferredCommandLedger")
        self._commands: Dict[IdTypeAndName, CommandData] = {}
        self.last_failed_flush: Optional[FlushAttempt] = None

    def __len__(self):
        return len(self._commands)

    def __iter__(self) -> Iterator[CommandData]:
        return iter(list(self._commands.values()))

    def __contains__(self, key: IdTypeAndName) -> bool:
        return key in self._commands

    def get(self, key: IdTypeAndName) -> Optional[CommandData]:
        return self._commands.get(key)

    @property
    def commands(self) -> List[CommandData]:
        return list(self._commands.values())

    def commands_for(self, document_id: str) -> List[CommandData]:
        return [command for key, command in self._commands.items() if key.key == document_id]

    def has_delete(self, document_id: str) -> bool:
        return IdTypeAndName.create(document_id, CommandType.DELETE, None) in self._commands

    def defer(self, *commands: CommandData) -> None:
        """
        Registers the commands in order. Either all of them are accepted or, on the first conflict,
        none of them is and DeferredCommandConflictException is raised.
        """
        added = []
        try:
            for command in commands:
                if command is None:
                    raise ValueError("Command cannot be None")
                self._assert_no_conflict(command)
                key = IdTypeAndName.of(command)
                self._commands[key] = command
                added.append(key)
        except Exception:
            for key in added:
                del self._commands[key]
            raise

        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(f"Deferred {len(added)} command(s), {len(self._commands)} pending")

    def _assert_no_conflict(self, command: CommandData) -> None:
        key = IdTypeAndName.of(command)
        existing = self._commands.get(key)
        if existing is not None:
            self._throw_conflict(command, existing)

        if command.command_type == CommandType.DELETE:
            for other in self.commands_for(command.key):
                self._throw_conflict(command, other)
            return

        existing_delete = self._commands.get(IdTypeAndName.create(command.key, CommandType.DELETE, None))
        if existing_delete is not None:
            self._throw_conflict(command, existing_delete)

        if command.command_type == CommandType.ATTACHMENT_PUT:
            self._assert_attachment_free(command, CommandType.ATTACHMENT_DELETE, CommandType.ATTACHMENT_MOVE)
        elif command.command_type == CommandType.ATTACHMENT_DELETE:
            self._assert_attachment_free(command, CommandType.ATTACHMENT_PUT, CommandType.ATTACHMENT_MOVE)
        elif command.command_type == CommandType.ATTACHMENT_MOVE:
            self._assert_attachment_free(command, CommandType.ATTACHMENT_PUT, CommandType.ATTACHMENT_DELETE)

    def _assert_attachment_free(self, command: CommandData, *command_types: CommandType) -> None:
        for command_type in command_types:
            other = self._commands.get(IdTypeAndName.create(command.key, command_type, command.name))
            if other is not None:
                self._throw_conflict(command, other)

    @staticmethod
    def _throw_conflict(command: CommandData, existing: CommandData) -> None:
        target = f"attachment '{command.name}' of document '{command.key}'" if command.name else f"'{command.key}'"
        raise DeferredCommandConflictException(
            f"Can't defer {command.command_type} of {target}, there is a deferred {existing.command_type} "
            f"command registered for {'attachment ' + repr(existing.name) if existing.name else 'this document'} "
            f"in the session",
            command.key,
        )

    def flush(self) -> FlushAttempt:
        return FlushAttempt(self.commands)

    def confirm(self, attempt: FlushAttempt) -> None:
        # commands deferred while the attempt was in flight stay pending
        for command in attempt.commands:
            key = IdTypeAndName.of(command)
            if self._commands.get(key) is command:
                del self._commands[key]
        attempt.status = FlushAttempt.Status.CONFIRMED
        self.last_failed_flush = None

    def fail(self, attempt: FlushAttempt, error: BaseException) -> None:
        attempt.status = FlushAttempt.Status.FAILED
        attempt.error = error
        self.last_failed_flush = attempt
        self._logger.info(f"Flush of {len(attempt)} deferred command(s) failed, commands kept: {error}")

    def clear(self) -> None:
        self._commands.clear()
        self.last_failed_flush = None
