import asyncio
import logging
import shlex
from typing import List, Sequence

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 10  # seconds allowed for each adapter command


def reset_commands(adapter: str = "hci0") -> List[str]:
    """Commands that reset the adapter, enable page/inquiry scan and bring it up."""
    return [
        f"sudo hciconfig {adapter} reset",
        f"sudo hciconfig {adapter} piscan",
        f"sudo hciconfig {adapter} up",
    ]


class AdapterReset:
    """Best-effort Bluetooth adapter bring-up before a scan.

    Each command runs in turn; a failing or hanging command is logged and the
    rest still run. Nothing here raises.
    """

    def __init__(self, commands: Sequence[str], timeout: float = COMMAND_TIMEOUT):
        self.commands = list(commands)
        self.timeout = timeout

    async def __call__(self) -> bool:
        logger.info("Initializing Bluetooth adapter...")
        ok = True
        for command in self.commands:
            ok = await self._run(command) and ok
        if ok:
            logger.info("Bluetooth adapter initialized")
        return ok

    async def _run(self, command: str) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                *shlex.split(command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Could not run %r: %s", command, e)
            return False

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("%r timed out after %ss", command, self.timeout)
            return False

        if proc.returncode != 0:
            logger.warning(
                "%r exited with %s: %s",
                command,
                proc.returncode,
                stderr.decode(errors="replace").strip(),
            )
            return False
        return True
