"""
Shell integration for local interactive shells.

zsh and bash are started with startup shims that load the user's own
startup files and then install prompt hooks. The hooks report the working
directory (OSC 1337 ``CurrentDir=``) and the command about to run (OSC 1337
``Command=``); an empty ``Command=`` is emitted at every prompt. These are the
reports `ansi.OscReportScanner` picks up.
"""

import logging
import os
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ZSH_HOOKS = r"""
__sb_emit_cwd() {
  printf '\033]1337;CurrentDir=%s\007' "$PWD"
  printf '\033]1337;Command=\007'
}

__sb_emit_command() { printf '\033]1337;Command=%s\007' "$1"; }

typeset -ga precmd_functions preexec_functions
precmd_functions+=__sb_emit_cwd
preexec_functions+=__sb_emit_command
__sb_emit_cwd
"""

BASH_PROFILE = """if [ -f /etc/profile ]; then . /etc/profile; fi
if [ -f ~/.bash_profile ]; then . ~/.bash_profile
elif [ -f ~/.bash_login ]; then . ~/.bash_login
elif [ -f ~/.profile ]; then . ~/.profile
elif [ -f ~/.bashrc ]; then . ~/.bashrc
fi
"""

# The DEBUG trap fires before every simple command; only the first one after a
# prompt is the command the user submitted.
BASH_HOOKS = r"""
__sb_at_prompt=0

__sb_precmd() {
  __sb_at_prompt=1
  printf '\033]1337;CurrentDir=%s\007' "$PWD"
  printf '\033]1337;Command=\007'
}

__sb_preexec() {
  [ "$__sb_at_prompt" = 1 ] || return 0
  case "$BASH_COMMAND" in __sb_precmd*) return 0 ;; esac
  __sb_at_prompt=0
  printf '\033]1337;Command=%s\007' "$BASH_COMMAND"
}

trap '__sb_preexec' DEBUG
PROMPT_COMMAND="${PROMPT_COMMAND%;}"
PROMPT_COMMAND="${PROMPT_COMMAND:+$PROMPT_COMMAND; }__sb_precmd"
"""


@dataclass
class ShellLaunch:
    """argv and extra environment for starting an interactive shell."""
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    hook_path: Optional[Path] = None


def shell_kind(shell: str) -> Optional[str]:
    name = os.path.basename(shell).lower()
    if "zsh" in name:
        return "zsh"
    if "bash" in name:
        return "bash"
    return None


def _source_if_exists(path: Path) -> str:
    quoted = shlex.quote(str(path))
    return f"if [ -f {quoted} ]; then source {quoted}; fi\n"


def _zsh_wrap(orig_dir: Path, filename: str, restore_to_shim: bool) -> str:
    """Source the user's file with ZDOTDIR pointing at their real directory."""
    lines = [
        'typeset -g __sb_shim_zdotdir="$ZDOTDIR"\n',
        f"export ZDOTDIR={shlex.quote(str(orig_dir))}\n",
        _source_if_exists(orig_dir / filename),
    ]
    if restore_to_shim:
        lines.append('export ZDOTDIR="$__sb_shim_zdotdir"\n')
    lines.append("unset __sb_shim_zdotdir\n")
    return "".join(lines)


def write_zsh_shim(shim_dir: Path, orig_dir: Path) -> None:
    """
    Write a ZDOTDIR shim.

    .zshenv and .zprofile hand ZDOTDIR back to the shim after sourcing the
    user's file; .zshrc leaves it at the user's directory, so .zlogin and
    anything run later see the real one.
    """
    shim_dir.mkdir(parents=True, exist_ok=True)
    (shim_dir / ".zshenv").write_text(_zsh_wrap(orig_dir, ".zshenv", True))
    (shim_dir / ".zprofile").write_text(_zsh_wrap(orig_dir, ".zprofile", True))
    (shim_dir / ".zshrc").write_text(_zsh_wrap(orig_dir, ".zshrc", False) + ZSH_HOOKS)


def write_bash_rcfile(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(BASH_PROFILE + BASH_HOOKS)


def _user_zdotdir(env: dict[str, str]) -> Optional[Path]:
    for candidate in (env.get("ZDOTDIR"), env.get("HOME")):
        if candidate and os.path.isdir(candidate):
            return Path(candidate)
    return None


def prepare_shell_launch(shell: str, hook_root: Optional[str], session_id: str, env: dict[str, str]) -> ShellLaunch:
    """
    How to start `shell` as an interactive login shell with hooks installed.

    Falls back to a plain ``shell -l`` when the shell is not supported, hooks
    are disabled (`hook_root` is None), or the shim cannot be written.
    """
    plain = ShellLaunch(argv=[shell, "-l"])
    kind = shell_kind(shell)
    if kind is None or hook_root is None:
        return plain

    root = Path(hook_root).expanduser()
    try:
        if kind == "zsh":
            orig_dir = _user_zdotdir(env)
            if orig_dir is None:
                return plain
            shim_dir = root / f"zdotdir-{session_id}"
            write_zsh_shim(shim_dir, orig_dir)
            return ShellLaunch(argv=[shell, "-l"], env={"ZDOTDIR": str(shim_dir)}, hook_path=shim_dir)

        rcfile = root / f"bashrc-{session_id}"
        write_bash_rcfile(rcfile)
        # A login bash ignores --rcfile; the rcfile sources the login files itself
        return ShellLaunch(argv=[shell, "--rcfile", str(rcfile), "-i"], hook_path=rcfile)
    except OSError as e:
        logger.warning(f"Could not install shell hooks for {session_id}: {e}")
        return plain


def remove_hooks(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
    except OSError as e:
        logger.warning(f"Could not remove shell hooks at {path}: {e}")
