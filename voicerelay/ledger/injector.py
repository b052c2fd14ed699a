"""
Terminal injection boundary.

The injector is an opaque capability with one operation:

    inject(text) -> InjectionResult

Its side effect (text typed into a live terminal) is only observable by
re-reading the external transcript source afterwards; see verifier.py.

The default implementation drives macOS Terminal through AppleScript
keystrokes via `osascript`, run as an asyncio subprocess.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

_QUOTES_RE = re.compile(r"[\"']")
_LINE_BREAKS_RE = re.compile(r"\s*[\r\n]+\s*")


@dataclass(frozen=True)
class NormalizedPrompt:
    """
    A prompt prepared for injection.

    Attributes:
        text: What should appear in the terminal (and the transcript):
              quote characters stripped, line breaks folded into spaces since
              a typed newline would submit early.
        injector_text: `text` with backslashes escaped for an AppleScript
              string literal (quotes are already gone).
    """
    text: str
    injector_text: str


def normalize_prompt(prompt: str) -> NormalizedPrompt:
    """Strip quotes and fold line breaks, then escape for the injector command syntax."""
    text = _QUOTES_RE.sub("", prompt)
    text = _LINE_BREAKS_RE.sub(" ", text).strip()
    injector_text = text.replace("\\", "\\\\")
    return NormalizedPrompt(text=text, injector_text=injector_text)


@dataclass(frozen=True)
class InjectionResult:
    success: bool
    error: Optional[str] = None


class TerminalInjector:
    """Interface for the capability that types text into a terminal."""

    async def inject(self, text: str) -> InjectionResult:
        raise NotImplementedError


APPLESCRIPT_TEMPLATE = """
tell application "{app}"
    activate
end tell

delay 0.2

tell application "System Events"
    tell process "{app}"
        set frontmost to true
        try
            perform action "AXRaise" of window 1
        end try
        keystroke "{text}"
        delay {return_delay}
        keystroke return
        return "success: Typed into {app}"
    end tell
end tell
"""


class AppleScriptInjector(TerminalInjector):
    """
    Types text into the frontmost Terminal window via `osascript`.

    Terminal needs Accessibility permission in System Settings for
    System Events keystrokes to work.
    """

    def __init__(self, app: str = "Terminal", return_delay_seconds: float = 1.0, osascript: str = "osascript"):
        self._app = app
        self._return_delay = return_delay_seconds
        self._osascript = osascript

    def build_script(self, injector_text: str) -> str:
        return APPLESCRIPT_TEMPLATE.format(
            app=self._app,
            text=injector_text,
            return_delay=self._return_delay,
        )

    async def inject(self, text: str) -> InjectionResult:
        logger.info("Injecting prompt into %s: %r", self._app, text)
        script = self.build_script(text)

        try:
            proc = await asyncio.create_subprocess_exec(
                self._osascript,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return InjectionResult(success=False, error=f"AppleScript error: {e}")

        stdout, stderr = await proc.communicate(script.encode("utf-8"))
        out = stdout.decode("utf-8", errors="replace").strip()
        err = stderr.decode("utf-8", errors="replace").strip()

        if proc.returncode != 0:
            logger.warning("osascript exited %s; ensure %s has Accessibility permissions", proc.returncode, self._app)
            return InjectionResult(success=False, error=f"AppleScript error: exit {proc.returncode}: {err}")
        if err:
            return InjectionResult(success=False, error=f"AppleScript stderr: {err}")
        if "error:" in out:
            return InjectionResult(success=False, error=out)

        logger.info("AppleScript result: %s", out)
        return InjectionResult(success=True)
