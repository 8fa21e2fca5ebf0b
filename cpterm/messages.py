"""Typed messages exchanged between pages, the relay and the native host.

Every message is a pydantic model whose ``type`` field is the discriminator
of the :data:`Message` union. Wire names are camelCase (``messageType``,
``hostVersion``) to match what the native host speaks; Python attribute
names are snake_case and either form is accepted on construction.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from .errors import MessageFormatError
from .msg_constants import (
    CMD_KEEP_ALIVE,
    LOG_ERROR,
    LOG_INFO,
    MSG_COMMAND,
    MSG_LOG_ENTRY,
    MSG_NEW_PROBLEM,
    MSG_SET_CODE,
    MSG_SET_PREFS,
    MSG_TEST_RESULTS,
    MSG_VERSION,
)


def _strip(value):
    if isinstance(value, str):
        return value.strip()
    return value


class Command(BaseModel):
    type: Literal["command"] = MSG_COMMAND
    command: str


class LogEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["logEntry"] = MSG_LOG_ENTRY
    message_type: Literal["info", "error"] = Field(alias="messageType")
    message: str

    @classmethod
    def error(cls, message: str) -> "LogEntry":
        return cls(message_type=LOG_ERROR, message=message)

    @classmethod
    def info(cls, message: str) -> "LogEntry":
        return cls(message_type=LOG_INFO, message=message)


class NewProblem(BaseModel):
    type: Literal["newProblem"] = MSG_NEW_PROBLEM
    problem: str
    code: str
    language: str
    url: str
    name: str

    @field_validator("problem", "code", "language", "url", "name", mode="before")
    @classmethod
    def _trim_fields(cls, value):
        return _strip(value)


class SetCode(BaseModel):
    type: Literal["setCode"] = MSG_SET_CODE
    code: str


class SetPrefs(BaseModel):
    type: Literal["setPrefs"] = MSG_SET_PREFS
    prefs: dict[str, str]


class TestCase(BaseModel):
    """One harvested test case.

    ``output``, ``expected`` and ``error`` stay ``None`` when they do not
    apply, so "no output" is distinguishable from "empty output". A case
    with an ``error`` is a compile or runtime failure and carries no
    output/expected pair.
    """

    input: str = ""
    output: str | None = None
    expected: str | None = None
    error: str | None = None

    @field_validator("input", "output", "expected", "error", mode="before")
    @classmethod
    def _trim_fields(cls, value):
        return _strip(value)

    @model_validator(mode="after")
    def _error_excludes_output(self):
        if self.error is not None and (self.output is not None or self.expected is not None):
            raise ValueError("a failed test case cannot also carry output or expected values")
        return self


class TestResults(BaseModel):
    type: Literal["testResults"] = MSG_TEST_RESULTS
    cases: dict[str, TestCase] | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _cases_xor_error(self):
        if (self.cases is None) == (self.error is None):
            raise ValueError("exactly one of 'cases' and 'error' must be set")
        return self


class Version(BaseModel):
    """Handshake announcement; the first frame the native host writes."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["version"] = MSG_VERSION
    host_version: str = Field(alias="hostVersion")


Message = Annotated[
    Union[Command, LogEntry, NewProblem, SetCode, SetPrefs, TestResults, Version],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER = TypeAdapter(Message)


def parse_message(raw: str | bytes | dict) -> Message:
    """Build a message from JSON text/bytes or an already-decoded dict."""
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return _MESSAGE_ADAPTER.validate_json(raw)
        return _MESSAGE_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise MessageFormatError(f"Invalid message: {exc}") from exc


def dump_message(message: Message) -> dict:
    """Return the JSON-compatible wire form of *message*."""
    return message.model_dump(mode="json", by_alias=True)


def encode_message(message: Message) -> bytes:
    return message.model_dump_json(by_alias=True).encode("utf-8")


def is_command(message: Message, verb: str) -> bool:
    return isinstance(message, Command) and message.command == verb


def is_keep_alive(message: Message) -> bool:
    return is_command(message, CMD_KEEP_ALIVE)
