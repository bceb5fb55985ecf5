"""Find processes that keep a worktree directory busy.

Used after a failed cleanup to tell the user what to close before retrying.
"""

import json
import logging
from dataclasses import dataclass

from flowize import commands
from flowize.bridge import BridgeClient
from flowize.errors import FlowizeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    name: str
    pid: int
    platform: str


def parse_lsof_output(stdout: str, platform: str = "linux") -> list[ProcessInfo]:
    """Parse ``lsof`` columns (COMMAND PID ...), skipping the header row."""
    processes: list[ProcessInfo] = []
    seen: set[tuple[str, int]] = set()

    for line in stdout.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[1])
        except ValueError:
            continue
        if pid <= 0 or (parts[0], pid) in seen:
            continue
        seen.add((parts[0], pid))
        processes.append(ProcessInfo(name=parts[0], pid=pid, platform=platform))

    return processes


def parse_cim_output(stdout: str) -> list[ProcessInfo]:
    """Parse ``ConvertTo-Json`` output: a single object or a list of them."""
    text = stdout.strip()
    if not text or text in ("null", "[]"):
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Unparseable process list: %s", text[:200])
        return []

    entries = data if isinstance(data, list) else [data]
    processes: list[ProcessInfo] = []
    seen: set[int] = set()
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            pid = int(entry.get("ProcessId", 0))
        except (TypeError, ValueError):
            continue
        if pid <= 0 or pid in seen:
            continue
        seen.add(pid)
        processes.append(ProcessInfo(name=str(entry.get("Name", "")), pid=pid, platform="win32"))
    return processes


async def find_processes_using(bridge: BridgeClient, path: str) -> list[ProcessInfo]:
    """List processes using ``path`` on the bridge host.

    Detection is advisory: bridge failures yield an empty list.
    """
    windows = commands.is_windows_path(path) or "\\" in path
    try:
        result = await bridge.run_sync(commands.list_processes_using(path, windows=windows))
    except FlowizeError as e:
        logger.warning("Process detection failed for %s: %s", path, e)
        return []

    if windows:
        return parse_cim_output(result.stdout)
    return parse_lsof_output(result.stdout)


def format_process_list(processes: list[ProcessInfo]) -> str:
    if not processes:
        return (
            "Unable to identify blocking process. Check: editors, terminals, node processes, "
            "or file explorers using this directory."
        )

    labels = {"win32": "Windows", "darwin": "macOS"}
    platform_label = labels.get(processes[0].platform, "Linux")
    lines = [f"  - {p.name} (PID: {p.pid})" for p in processes]
    return f"Processes using this directory ({platform_label}):\n" + "\n".join(lines)
