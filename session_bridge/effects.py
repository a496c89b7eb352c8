"""Effect catalog and command-line classification."""

import logging
import re
from typing import Iterable, Optional

from .models import Effect

logger = logging.getLogger(__name__)

DEFAULT_EFFECTS: tuple[Effect, ...] = (
    Effect(id="codex", label="codex", match_commands=("codex",)),
    Effect(id="claude", label="claude", match_commands=("claude",)),
)

_PATH_SEPARATORS = re.compile(r"[\\/]")
_EXE_SUFFIX = re.compile(r"\.exe$")


def normalize_command_token(token: str) -> str:
    """Strip path prefix and executable suffix, lowercase."""
    stripped = token.strip()
    base = _PATH_SEPARATORS.split(stripped)[-1]
    return _EXE_SUFFIX.sub("", base.lower())


def command_tag(command_line: Optional[str]) -> Optional[str]:
    """First normalized token of a command line, or None for blank input."""
    if not command_line:
        return None
    parts = command_line.split()
    if not parts:
        return None
    return normalize_command_token(parts[0])


class EffectCatalog:
    """Read-only effect catalog, loaded once."""

    def __init__(self, effects: Iterable[Effect] = DEFAULT_EFFECTS):
        self._effects: tuple[Effect, ...] = tuple(effects)
        self._by_id = {e.id: e for e in self._effects}

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "EffectCatalog":
        """Build the catalog from the `effects` config list (falls back to defaults)."""
        entries = (config or {}).get("effects")
        if not entries:
            return cls()

        effects = []
        for entry in entries:
            effect_id = (entry or {}).get("id")
            commands = [normalize_command_token(c) for c in entry.get("match_commands") or [] if c]
            if not effect_id or not commands:
                logger.warning(f"Skipping invalid effect entry: {entry!r}")
                continue
            idle_after_ms = entry.get("idle_after_ms")
            effects.append(Effect(
                id=effect_id,
                label=entry.get("label") or effect_id,
                match_commands=tuple(commands),
                idle_after_ms=int(idle_after_ms) if idle_after_ms is not None else None,
            ))
        if not effects:
            logger.warning("No valid effects configured, using defaults")
            return cls()
        return cls(effects)

    def __iter__(self):
        return iter(self._effects)

    def __len__(self) -> int:
        return len(self._effects)

    def get(self, effect_id: Optional[str]) -> Optional[Effect]:
        if not effect_id:
            return None
        return self._by_id.get(effect_id)

    def classify(self, command_line: Optional[str], name: Optional[str] = None) -> Optional[Effect]:
        """
        Classify a session's running command.

        The first whitespace-delimited token of `command_line` is normalized and
        matched against each effect's commands; `name` is tried as a fallback
        token. First match in catalog order wins.
        """
        cmd = command_tag(command_line)
        alt = normalize_command_token(name) if name and name.strip() else None
        if not cmd and not alt:
            return None

        for effect in self._effects:
            if (cmd and cmd in effect.match_commands) or (alt and alt in effect.match_commands):
                return effect
        return None


_default_catalog = EffectCatalog()


def classify(command_line: Optional[str], name: Optional[str] = None) -> Optional[Effect]:
    """Classify against the built-in catalog."""
    return _default_catalog.classify(command_line, name)
