"""
Capability contracts the tool catalogue binds to, plus the default local
implementations.

A capability is anything that satisfies one of the protocols below; the
dispatcher never sees concrete classes, so tests can swap in mocks freely.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import sys
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol, TextIO, runtime_checkable

log = logging.getLogger("sshbridge")


@runtime_checkable
class NotificationCapability(Protocol):
    async def play_sound(self, kind: str = "default") -> bool: ...

    async def play_attention(self) -> bool: ...

    async def flash_window(self, count: int = 5) -> bool: ...


@runtime_checkable
class MessagingCapability(Protocol):
    async def show_message(self, message: str, level: str = "info") -> None: ...


@runtime_checkable
class BrowserCapability(Protocol):
    async def open_url(self, url: str) -> Any: ...


@runtime_checkable
class SpeechCapability(Protocol):
    async def speak(self, text: str, voice: str | None = None) -> Any: ...


# ---------------------------------------------------------------------------
# Default implementations
# ---------------------------------------------------------------------------

CommandRunner = Callable[[Sequence[str]], Awaitable[bool]]

_WINDOWS_SOUNDS = {"default": "Asterisk", "success": "Asterisk", "error": "Hand", "warning": "Exclamation"}
_MAC_SOUNDS = {
    "default": "/System/Library/Sounds/Glass.aiff",
    "success": "/System/Library/Sounds/Glass.aiff",
    "error": "/System/Library/Sounds/Basso.aiff",
    "warning": "/System/Library/Sounds/Sosumi.aiff",
}
_FREEDESKTOP_SOUNDS = {"default": "message", "success": "complete", "error": "dialog-error", "warning": "dialog-warning"}

_FLASH_SCRIPT = """
Add-Type -TypeDefinition @"
using System;
using System.Runtime.InteropServices;
public class WindowFlash {
    [StructLayout(LayoutKind.Sequential)]
    public struct FLASHWINFO { public uint cbSize; public IntPtr hwnd; public uint dwFlags; public uint uCount; public uint dwTimeout; }
    [DllImport("user32.dll")]
    public static extern bool FlashWindowEx(ref FLASHWINFO pwfi);
    public static bool Flash(IntPtr handle, uint count) {
        FLASHWINFO fi = new FLASHWINFO();
        fi.cbSize = (uint)Marshal.SizeOf(fi);
        fi.hwnd = handle;
        fi.dwFlags = 15;
        fi.uCount = count;
        return FlashWindowEx(ref fi);
    }
}
"@
$target = Get-Process -Name "Code" -ErrorAction SilentlyContinue | Select-Object -First 1
if ($target) { [WindowFlash]::Flash($target.MainWindowHandle, __COUNT__) }
"""


def _powershell(command: str) -> list[str]:
    return ["powershell", "-NoProfile", "-Command", command]


def _encoded_powershell(script: str) -> list[str]:
    payload = base64.b64encode(script.encode("utf-16-le")).decode("ascii")
    return ["powershell", "-NoProfile", "-EncodedCommand", payload]


async def run_command(argv: Sequence[str]) -> bool:
    """Run a short command without a shell; True when it exits 0."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        log.debug("Command failed to start (%s): %s", argv[0], exc)
        return False
    return await proc.wait() == 0


class SystemNotifier:
    """Plays local notification sounds through the platform's own tools."""

    def __init__(
        self,
        platform: str | None = None,
        runner: CommandRunner | None = None,
        bell_stream: TextIO | None = None,
    ) -> None:
        self.platform = platform or sys.platform
        self.runner = runner or run_command
        self.bell_stream = bell_stream
        self._playing = False

    async def play_sound(self, kind: str = "default") -> bool:
        if self._playing:
            return False
        self._playing = True
        try:
            if self.platform == "win32":
                sound = _WINDOWS_SOUNDS.get(kind, "Asterisk")
                candidates = [
                    _powershell(f"[System.Media.SystemSounds]::{sound}.Play()"),
                    _powershell("[console]::beep(800, 200)"),
                ]
            elif self.platform == "darwin":
                sound = _MAC_SOUNDS.get(kind, _MAC_SOUNDS["default"])
                candidates = [["afplay", sound], ["osascript", "-e", "beep"]]
            else:
                sound = _FREEDESKTOP_SOUNDS.get(kind, "message")
                candidates = [
                    ["canberra-gtk-play", "-i", sound],
                    ["paplay", f"/usr/share/sounds/freedesktop/stereo/{sound}.oga"],
                    ["paplay", "/usr/share/sounds/gnome/default/alerts/drip.ogg"],
                    ["aplay", f"/usr/share/sounds/freedesktop/stereo/{sound}.oga"],
                ]
            for argv in candidates:
                if await self.runner(argv):
                    return True
            return await self.play_beep()
        finally:
            self._playing = False

    def _ring_bell(self, times: int) -> bool:
        stream = self.bell_stream or sys.stderr
        try:
            stream.write("\a" * times)
            stream.flush()
        except (OSError, ValueError):
            return False
        return True

    async def play_beep(self) -> bool:
        if self.platform == "win32":
            return await self.runner(_powershell("[console]::beep(800, 200)"))
        if self.platform == "darwin":
            return await self.runner(["osascript", "-e", "beep"])
        return self._ring_bell(1)

    async def play_attention(self) -> bool:
        if self.platform == "win32":
            return await self.runner(_powershell(
                "[console]::beep(800, 150); Start-Sleep -Milliseconds 100; [console]::beep(1000, 150)"
            ))
        if self.platform == "darwin":
            return await self.runner(["osascript", "-e", "beep 2"])
        return self._ring_bell(2)

    async def flash_window(self, count: int = 5) -> bool:
        # Taskbar flashing only exists on Windows; elsewhere fall back to beeps.
        if self.platform != "win32":
            return await self.play_attention()
        return await self.runner(_encoded_powershell(_FLASH_SCRIPT.replace("__COUNT__", str(int(count)))))


class LogMessenger:
    """Surfaces tool-requested messages to the operator through the log."""

    _LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or log

    async def show_message(self, message: str, level: str = "info") -> None:
        self.logger.log(self._LEVELS.get(level, logging.INFO), "%s", message)
