"""
Pre-run hooks.

Hooks are commands run in order before sources are enumerated, typically to
dump state into the run's working directory (database dumps, package lists).
Each hook runs with the working directory as cwd and its path exported as
STRONGBOX_WORK_DIR.

Failure policy, the same for every hook:
- mandatory hook whose tool is missing, that times out or exits non-zero:
  HookError, the run fails before any storage is touched
- optional hook in the same situations: skipped with a warning
"""

import os
import shlex
import shutil
import logging
import subprocess
from itertools import dropwhile
from typing import Dict, List, Optional

from .errors import HookError
from .policy import HookSpec

logger = logging.getLogger(__name__)

WORK_DIR_ENV = 'STRONGBOX_WORK_DIR'

# Shell builtins have no executable to look up
_SHELL_BUILTINS = {'cd', 'echo', 'export', 'test', '[', 'true', 'false', ':', 'set', 'exec', 'source', '.'}


def _executable(command) -> Optional[str]:
    """First command word that must exist on PATH, or None if not checkable."""
    if isinstance(command, str):
        try:
            tokens = shlex.split(command)
        except ValueError:
            return None
        # Skip leading VAR=value assignments
        tokens = list(dropwhile(lambda t: '=' in t.split('/', 1)[0], tokens))
        if not tokens or tokens[0] in _SHELL_BUILTINS:
            return None
        return tokens[0]
    return command[0] if command else None


class HookRunner:
    """Runs a model's hooks in a working directory."""

    def __init__(self, work_dir: str, env: Optional[Dict[str, str]] = None):
        self.work_dir = work_dir
        self.env = dict(env if env is not None else os.environ)
        self.env[WORK_DIR_ENV] = work_dir
        self.warnings: List[str] = []

    def _fail(self, hook: HookSpec, message: str):
        if hook.mandatory:
            raise HookError(f"Hook '{hook.name}': {message}")
        warning = f"Optional hook '{hook.name}' skipped: {message}"
        logger.warning(warning)
        self.warnings.append(warning)

    def run(self, hook: HookSpec) -> bool:
        """
        Run one hook.

        Returns:
            True if the hook ran and exited 0

        Raises:
            HookError: If a mandatory hook fails
        """
        executable = _executable(hook.command)
        if executable is not None and shutil.which(executable, path=self.env.get('PATH')) is None:
            self._fail(hook, f"command not found: {executable}")
            return False

        logger.info(f"Running hook '{hook.name}'")
        try:
            result = subprocess.run(
                hook.command,
                shell=isinstance(hook.command, str),
                cwd=self.work_dir,
                env=self.env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=hook.timeout,
            )
        except subprocess.TimeoutExpired:
            self._fail(hook, f"timed out after {hook.timeout}s")
            return False
        except OSError as e:
            self._fail(hook, f"could not be started: {e}")
            return False

        if result.returncode != 0:
            stderr_tail = result.stderr[-500:].decode('utf-8', 'replace').strip()
            self._fail(hook, f"exited with status {result.returncode}: {stderr_tail}")
            return False

        return True

    def run_all(self, hooks: List[HookSpec]) -> int:
        """Run hooks in order, returning how many succeeded."""
        return sum(1 for hook in hooks if self.run(hook))


def run_hooks(hooks: List[HookSpec], work_dir: str, env: Optional[Dict[str, str]] = None) -> List[str]:
    """
    Run hooks in order in work_dir.

    Returns:
        Warnings for optional hooks that were skipped

    Raises:
        HookError: On the first mandatory hook failure
    """
    runner = HookRunner(work_dir, env)
    runner.run_all(hooks)
    return runner.warnings
