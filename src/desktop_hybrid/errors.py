"""Exception hierarchy shared by the channel, ref manager and vision layers."""

from __future__ import annotations

from typing import Any, Optional, Sequence


class DesktopHybridError(RuntimeError):
    """Base class for every error raised by the engine."""


class NotConnectedError(DesktopHybridError):
    """Raised when an operation needs a connected channel."""


class ChannelConnectionError(DesktopHybridError):
    """Raised when the control channel cannot be reached."""


class ChannelCommandError(DesktopHybridError):
    """Raised when the control tool fails or returns something we cannot use."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        stdout: str = "",
        stderr: str = "",
        returncode: Optional[int] = None,
    ) -> None:
        self.command = list(command)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(message)

    def __str__(self) -> str:
        lines = [super().__str__()]
        if self.command:
            lines.append(f"command: {' '.join(self.command)}")
        if self.returncode is not None:
            lines.append(f"exit code: {self.returncode}")
        if self.stderr:
            lines.append(f"stderr: {self.stderr.strip()}")
        if self.stdout:
            lines.append(f"stdout: {self.stdout.strip()}")
        return "\n".join(lines)


class ChannelReplyError(ChannelCommandError):
    """The tool answered with ``{"success": false, "error": ...}``."""


class OperationTimeout(DesktopHybridError):
    """A single channel or provider call exceeded its deadline."""

    def __init__(self, message: str, *, timeout_ms: Optional[float] = None) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(message)


class ChannelTimeoutError(OperationTimeout):
    def __init__(self, message: str, *, command: Sequence[str] = (), timeout_ms: Optional[float] = None) -> None:
        self.command = list(command)
        super().__init__(message, timeout_ms=timeout_ms)


class UnsupportedLocatorError(DesktopHybridError, ValueError):
    """Raised when a locator has no selector form for the control channel."""


class UnknownRefError(DesktopHybridError, LookupError):
    """Raised when a ref is not part of the current snapshot."""

    def __init__(self, ref: str) -> None:
        self.ref = ref
        super().__init__(f"Ref not found: {ref}. Did you take a snapshot first?")


class ResolutionMiss(DesktopHybridError):
    """No tier of the cascade located the element."""

    def __init__(self, locator: str, tiers: Sequence[str] = (), *, location: Optional[Any] = None) -> None:
        self.locator = locator
        self.tiers = list(tiers)
        # Last visual verdict, if the visual tier ran.
        self.location = location
        tried = ", ".join(self.tiers) if self.tiers else "none"
        super().__init__(f"Element not found: {locator} (tiers tried: {tried})")


class ProviderTransportError(DesktopHybridError):
    """Network, authentication or configuration failure of a vision provider."""

    def __init__(self, message: str, *, provider: Optional[str] = None) -> None:
        self.provider = provider
        super().__init__(message)


class ProviderTimeoutError(OperationTimeout):
    def __init__(self, message: str, *, provider: Optional[str] = None, timeout_ms: Optional[float] = None) -> None:
        self.provider = provider
        super().__init__(message, timeout_ms=timeout_ms)


class ProviderReplyUnparseable(DesktopHybridError):
    """The model reply did not contain a JSON object we could decode."""

    def __init__(self, reply: str) -> None:
        self.reply = reply
        preview = reply if len(reply) <= 200 else reply[:200] + "..."
        super().__init__(f"Could not parse JSON from model reply: {preview!r}")


class BridgeNotReady(DesktopHybridError):
    """The host agent has not answered a bridge request yet."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"No response yet for bridge request {request_id}")
