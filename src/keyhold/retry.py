"""Interactive re-authentication of RPC calls ("privilege elevation").

Calls are written as if authentication always succeeds. When the agent
reports missing or denied authorization, :class:`AuthRetry` prompts for the
password and repeats the call until it succeeds, the password is rejected
with something other than a denial, or the prompt is cancelled.
"""

from __future__ import annotations

import enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, TypeVar

from loguru import logger

from .auth import encode_auth_from_password
from .config import get_env, is_unattended
from .errors import (
    ClientAuthDeniedError,
    ClientAuthMissingError,
    PasswordMissingError,
    RemoteError,
)
from .processors import PasswordPrompt, prompt_password

T = TypeVar("T")

Metadata = Dict[str, str]
AuthenticatedCall = Callable[[Metadata], Awaitable[T]]

MAX_REMOTE_DEPTH = 64


class RetryState(enum.Enum):
    INITIAL = "initial"
    RETRY = "retry"
    DONE = "done"
    FAILED = "failed"


def remote_error_cause(error: BaseException) -> Tuple[Optional[BaseException], int]:
    """Strip :class:`RemoteError` wrappers, returning the cause and the depth."""

    cause: Optional[BaseException] = error
    depth = 0
    while isinstance(cause, RemoteError) and depth < MAX_REMOTE_DEPTH:
        cause = cause.__cause__
        depth += 1
    return cause, depth


class AuthRetry:
    """State machine around one logical call: INITIAL -> RETRY* -> DONE | FAILED.

    The wrapped call may run once per attempt, so it must tolerate repeats.
    """

    def __init__(
        self,
        call: AuthenticatedCall,
        *,
        prompt: Optional[PasswordPrompt] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._call = call
        self._prompt = prompt or prompt_password
        self._env = get_env(env)
        self.state = RetryState.INITIAL
        self.prompts = 0

    async def run(self, meta: Optional[Metadata] = None) -> Any:
        if self.state is not RetryState.INITIAL:
            raise RuntimeError("AuthRetry instances are single use")
        try:
            result = await self._call(dict(meta or {}))
        except Exception as exc:
            # Never prompt when credentials were supplied through the environment.
            if is_unattended(self._env):
                self.state = RetryState.FAILED
                raise
            cause, _ = remote_error_cause(exc)
            if not isinstance(cause, (ClientAuthMissingError, ClientAuthDeniedError)):
                self.state = RetryState.FAILED
                raise
            logger.debug("Call needs authentication ({}), prompting", type(cause).__name__)
            self.state = RetryState.RETRY
        else:
            self.state = RetryState.DONE
            return result

        while True:
            password = self._prompt()
            self.prompts += 1
            if password is None:
                self.state = RetryState.FAILED
                raise PasswordMissingError()
            auth = {"authorization": encode_auth_from_password(password)}
            try:
                result = await self._call(auth)
            except Exception as exc:
                cause, _ = remote_error_cause(exc)
                # Authorization cannot be missing any more; only a denial is retried.
                if not isinstance(cause, ClientAuthDeniedError):
                    self.state = RetryState.FAILED
                    raise
                logger.debug("Password denied, prompting again")
            else:
                self.state = RetryState.DONE
                return result


async def retry_authentication(
    call: AuthenticatedCall,
    meta: Optional[Metadata] = None,
    *,
    prompt: Optional[PasswordPrompt] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Any:
    return await AuthRetry(call, prompt=prompt, env=env).run(meta)
