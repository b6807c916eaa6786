"""Error taxonomy shared by the agent protocol and the CLI."""

from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type


class sysexits:
    """Process exit statuses, following BSD ``sysexits.h``."""

    OK = 0
    GENERAL = 1
    USAGE = 64
    DATAERR = 65
    NOINPUT = 66
    UNAVAILABLE = 69
    SOFTWARE = 70
    OSERR = 71
    TEMPFAIL = 75
    NOPERM = 77
    UNKNOWN = 255


_REGISTRY: Dict[str, Type["KeyholdError"]] = {}


class KeyholdError(Exception):
    """Base for every domain error.

    Domain errors carry a class-level ``description``, an ``exit_code`` and an
    optional ``data`` payload. They round-trip through JSON so that errors
    raised inside the agent can be rebuilt on the client side.
    """

    description: str = "Keyhold error"
    exit_code: int = sysexits.GENERAL

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        _REGISTRY[cls.__name__] = cls

    def __init__(
        self,
        message: str = "",
        *,
        data: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.data: Dict[str, Any] = dict(data) if data else {}
        self.timestamp = timestamp or datetime.now(timezone.utc)
        if cause is not None:
            self.__cause__ = cause

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "message": self.message,
            "description": self.description,
            "exit_code": self.exit_code,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }
        if self.__cause__ is not None:
            data["cause"] = self.__cause__
        if self.__traceback__ is not None:
            data["stack"] = "".join(traceback.format_tb(self.__traceback__))
        return {"type": self.name, "data": data}

    @classmethod
    def from_json(cls, payload: Any) -> "KeyholdError":
        if (
            not isinstance(payload, dict)
            or payload.get("type") != cls.__name__
            or not isinstance(payload.get("data"), dict)
        ):
            raise TypeError(f"Cannot decode JSON to {cls.__name__}")
        data = payload["data"]
        message = data.get("message", "")
        if not isinstance(message, str):
            raise TypeError(f"Cannot decode JSON to {cls.__name__}")
        # Subclasses may take extra constructor arguments; only the base
        # fields are restored here.
        error = cls.__new__(cls)
        KeyholdError.__init__(
            error,
            message,
            data=data.get("data") if isinstance(data.get("data"), dict) else None,
            cause=_decode_cause(data.get("cause")),
            timestamp=_parse_timestamp(data.get("timestamp")),
        )
        return error


class UnknownRemoteError(KeyholdError):
    """An error reported by the agent whose type this client does not know."""

    description = "Unknown error reported by the agent"

    def __init__(self, message: str = "", *, remote_type: str = "Error", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.remote_type = remote_type

    @property
    def name(self) -> str:
        return self.remote_type


class RemoteError(KeyholdError):
    """Wraps an error that was raised on the far side of an RPC call."""

    description = "Remote error from RPC call"

    def __init__(
        self,
        metadata: Optional[Dict[str, Any]] = None,
        message: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.metadata: Dict[str, Any] = dict(metadata) if metadata else {}

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        cause = self.__cause__
        depth = 0
        while isinstance(cause, RemoteError) and depth < 64:
            cause = cause.__cause__
            depth += 1
        if isinstance(cause, KeyholdError):
            return cause.exit_code
        return sysexits.GENERAL

    def to_json(self) -> Dict[str, Any]:
        payload = super().to_json()
        payload["data"]["metadata"] = self.metadata
        return payload

    @classmethod
    def from_json(cls, payload: Any) -> "RemoteError":
        error = super().from_json(payload)
        metadata = payload["data"].get("metadata")
        error.metadata = dict(metadata) if isinstance(metadata, dict) else {}
        return error  # type: ignore[return-value]


# Errors raised by the agent's client service


class ClientAuthMissingError(KeyholdError):
    description = "Authorization metadata is required but missing"
    exit_code = sysexits.NOPERM


class ClientAuthDeniedError(KeyholdError):
    description = "Authorization metadata is invalid or has been denied"
    exit_code = sysexits.NOPERM


class ClientConnectionError(KeyholdError):
    description = "Failed to connect to the agent client service"
    exit_code = sysexits.UNAVAILABLE


class ClientNodeIdMismatchError(KeyholdError):
    description = "Agent reported a node ID different from the one requested"
    exit_code = sysexits.UNAVAILABLE


# Errors raised by the CLI itself


class CLIError(KeyholdError):
    description = "Keyhold CLI error"
    exit_code = sysexits.GENERAL


class NodePathError(CLIError):
    description = "Cannot derive default node path from unknown platform"
    exit_code = sysexits.USAGE


class ClientOptionsError(CLIError):
    description = "Missing required client options"
    exit_code = sysexits.USAGE


class ParseError(CLIError):
    description = "Failed to parse option value"
    exit_code = sysexits.USAGE


class PasswordWrongError(CLIError):
    description = "Wrong password, please try again"
    exit_code = sysexits.USAGE


class PasswordMissingError(CLIError):
    description = (
        "Password is necessary, provide it via --password-file, KH_PASSWORD or when prompted"
    )
    exit_code = sysexits.USAGE


class PasswordFileReadError(CLIError):
    description = "Failed to read password file"
    exit_code = sysexits.NOINPUT


class RecoveryCodeFileReadError(CLIError):
    description = "Failed to read recovery code file"
    exit_code = sysexits.NOINPUT


class AgentStatusError(CLIError):
    description = "Keyhold agent status"
    exit_code = sysexits.TEMPFAIL


def decode_error(payload: Any) -> KeyholdError:
    """Rebuild an error from its JSON form.

    Unknown types become :class:`UnknownRemoteError` so that the reported
    name and message survive.
    """

    if not isinstance(payload, dict):
        return UnknownRemoteError(str(payload))
    error_type = payload.get("type")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    cls = _REGISTRY.get(error_type) if isinstance(error_type, str) else None
    if cls is not None and cls is not UnknownRemoteError:
        try:
            return cls.from_json(payload)
        except (TypeError, ValueError):
            pass
    message = data.get("message")
    return UnknownRemoteError(
        message if isinstance(message, str) else "",
        remote_type=error_type if isinstance(error_type, str) else "Error",
        cause=_decode_cause(data.get("cause")),
    )


def _decode_cause(value: Any) -> Optional[BaseException]:
    if value is None:
        return None
    return decode_error(value)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
