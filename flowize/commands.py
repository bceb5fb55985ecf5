"""Shell command lines sent to the local bridge.

Everything the bridge runs is built here so quoting and path handling live in
one place. File operations are expressed as small ``node -e`` scripts because
the bridge host always has Node available; arbitrary text is passed to them
base64-encoded to stay clear of shell quoting.
"""

import base64
import re
import shlex
from typing import Iterable, Optional

FALLBACK_SKILL = "\n".join([
    "# Flowize Agent Skill Fallback",
    "",
    "- Read issue-description.md and implement only requested scope.",
    "- Keep changes minimal and consistent with existing code style.",
    "- Return clear implementation output and verification notes.",
])

_WINDOWS_DRIVE = re.compile(r"^[a-zA-Z]:[\\/]")
_TEMPLATE_KEY = re.compile(r"\{([a-zA-Z0-9_]+)\}")


def quote(value: str) -> str:
    """Double-quote a shell argument (embedded double quotes are dropped)."""
    return '"' + str(value).replace('"', "") + '"'


def encode_b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def is_windows_path(value: str) -> bool:
    return bool(_WINDOWS_DRIVE.match(value))


def is_absolute_path(value: str) -> bool:
    return is_windows_path(value) or value.startswith("/")


def to_shell_path(value: str) -> str:
    """Use backslashes for drive-letter paths; leave POSIX paths alone."""
    if is_windows_path(value):
        return value.replace("/", "\\")
    return value


def join_path(base: str, suffix: str) -> str:
    if base.endswith("/"):
        return f"{base}{suffix}"
    return f"{base}/{suffix}"


def resolve_path_for_worktree(worktree_path: str, value: str) -> str:
    """Resolve a configured path relative to the worktree unless it is absolute."""
    trimmed = value.strip()
    if not trimmed or is_absolute_path(trimmed):
        return trimmed
    return join_path(worktree_path, re.sub(r"^(?:\.[\\/]|[\\/])+", "", trimmed))


def _escape_posix(value: str, context: str) -> str:
    if context == '"':
        return re.sub(r'([\\"$`])', r"\\\1", value)
    if context == "'":
        return value.replace("'", "'\\''")
    return shlex.quote(value) if value else ""


def _escape_windows(value: str, context: str) -> str:
    # cmd.exe has no escape inside double quotes; quotes and %VAR% expansion are removed
    cleaned = re.sub(r'["%\r\n]', "", value)
    if context == '"':
        return cleaned
    return f'"{cleaned}"' if cleaned else ""


def quote_arg(value: str, windows: bool = False) -> str:
    """Quote ``value`` as a single bare argument for the target shell."""
    return _escape_windows(value, "") if windows else _escape_posix(value, "")


def fill_template(
    template: str,
    values: dict[str, str],
    windows: bool = False,
    raw: Iterable[str] = (),
) -> str:
    """Replace ``{key}`` placeholders with values escaped for the target shell.

    Each value is escaped for the quoting context it lands in. Keys listed
    in ``raw`` hold command fragments that are already quoted and are
    inserted as is. Unknown keys become empty strings.
    """
    raw_keys = set(raw)
    escape = _escape_windows if windows else _escape_posix
    out: list[str] = []
    context = ""
    i = 0
    while i < len(template):
        char = template[i]
        match = _TEMPLATE_KEY.match(template, i)
        if match:
            key = match.group(1)
            value = values.get(key, "")
            out.append(value if key in raw_keys else escape(value, context))
            i = match.end()
            continue

        if char == "\\" and not windows and context != "'" and i + 1 < len(template):
            out.append(template[i:i + 2])
            i += 2
            continue
        if char == '"' and context in ("", '"'):
            context = "" if context else '"'
        elif char == "'" and not windows and context in ("", "'"):
            context = "" if context else "'"
        out.append(char)
        i += 1
    return "".join(out)


def ensure_print_logs_flag(command: str) -> str:
    """Make ``opencode run`` stream its logs so the job never looks stale."""
    if not re.search(r"\bopencode\s+run\b", command, re.IGNORECASE):
        return command
    if re.search(r"\s--print-logs\b", command, re.IGNORECASE):
        return command
    return f"{command} --print-logs"


def ensure_windows_drive_switch(command: str, worktree_path: str) -> str:
    """On Windows, ``cd`` needs ``/d`` to also switch drives."""
    if not re.match(r"^[a-zA-Z]:\\", worktree_path):
        return command
    return re.sub(r'^\s*cd\s+"([a-zA-Z]:\\[^"]*)"\s*&&', r'cd /d "\1" &&', command, count=1, flags=re.IGNORECASE)


def is_yes(stdout: str) -> bool:
    return stdout.strip().lower() == "yes"


# Git
#
# Worktree management runs in the repository root (the bridge's working
# directory). Branch-level commands take the worktree path as ``cwd``.


def git(cwd: Optional[str] = None) -> str:
    return f"git -C {quote(cwd)}" if cwd else "git"


def fetch_origin() -> str:
    return "git fetch origin"


def fetch_branch(branch: str, cwd: Optional[str] = None) -> str:
    return f"{git(cwd)} fetch origin {quote(branch)}"


def worktree_prune() -> str:
    return "git worktree prune"


def worktree_list() -> str:
    return "git worktree list --porcelain"


def ref_exists(ref: str, cwd: Optional[str] = None) -> str:
    """Prints ``yes`` or ``no`` instead of failing."""
    return f"{git(cwd)} show-ref --verify --quiet {quote(ref)} && echo yes || echo no"


def local_branch_exists(branch: str) -> str:
    return ref_exists(f"refs/heads/{branch}")


def remote_branch_exists(branch: str, cwd: Optional[str] = None) -> str:
    return ref_exists(f"refs/remotes/origin/{branch}", cwd)


def worktree_add(path: str, branch: str) -> str:
    return f"git worktree add {quote(path)} {quote(branch)}"


def worktree_add_new_branch(path: str, branch: str, base_branch: str) -> str:
    """Create ``branch`` from ``origin/<base_branch>`` and check it out at ``path``."""
    return f"git worktree add -b {quote(branch)} {quote(path)} {quote('origin/' + base_branch)}"


def worktree_remove(path: str) -> str:
    return f"git worktree remove --force {quote(path)}"


def commit_all(branch: str, cwd: Optional[str] = None) -> str:
    """Stage everything and commit, unless there is nothing to commit."""
    message = f"chore: sync worktree updates for {branch}"
    g = git(cwd)
    return f"{g} add -A && {g} diff --cached --quiet || {g} commit -m {quote(message)}"


def rebase_onto_remote(branch: str, cwd: Optional[str] = None) -> str:
    return f"{git(cwd)} rebase {quote('origin/' + branch)}"


def rebase_abort(cwd: Optional[str] = None) -> str:
    return f"{git(cwd)} rebase --abort"


def push_upstream(branch: str, cwd: Optional[str] = None) -> str:
    return f"{git(cwd)} push -u origin {quote(branch)}"


def push_force_with_lease(branch: str, cwd: Optional[str] = None) -> str:
    return f"{git(cwd)} push --force-with-lease -u origin {quote(branch)}"


# Filesystem


def path_exists(path: str) -> str:
    """Prints ``yes`` or ``no``."""
    return (
        "node -e \"const fs=require('fs');"
        "process.stdout.write(fs.existsSync(process.argv[1])?'yes':'no')\" "
        f"{quote(path)}"
    )


def remove_directory(path: str) -> str:
    return (
        "node -e \"const fs=require('fs');"
        "fs.rmSync(process.argv[1], { recursive: true, force: true });\" "
        f"{quote(path)}"
    )


def copy_env_files(source: str, target: str) -> str:
    """Copy every ``.env*`` file from ``source`` into ``target``."""
    return (
        "node -e \"const fs=require('fs');const path=require('path');"
        "const src=process.argv[1];const dst=process.argv[2];"
        "if(!fs.existsSync(src)||!fs.existsSync(dst)){process.exit(0);}"
        "for(const name of fs.readdirSync(src)){"
        "if(!name.startsWith('.env'))continue;"
        "const from=path.join(src,name);"
        "try{if(fs.statSync(from).isFile()){fs.copyFileSync(from,path.join(dst,name));}}catch{}"
        "}\" "
        f"{quote(source)} {quote(target)}"
    )


def ensure_agent_workspace(
    workspace_dir: str,
    issue_file: str,
    issue_content: str,
    source_skill_file: str,
    skill_file: str,
) -> str:
    """Create the agent workspace with the issue brief and a SKILL file.

    The SKILL file is copied from ``source_skill_file`` when it exists and is
    non-empty, otherwise a built-in fallback is written.
    """
    return (
        "node -e \"const fs=require('fs');"
        "const dir=process.argv[1];const issueFile=process.argv[2];const issueB64=process.argv[3]||'';"
        "const srcSkill=process.argv[4]||'';const dstSkill=process.argv[5]||'';const fallbackB64=process.argv[6]||'';"
        "const issueContent=Buffer.from(issueB64,'base64').toString('utf8');"
        "const fallbackSkill=Buffer.from(fallbackB64,'base64').toString('utf8');"
        "if(!fs.existsSync(dir))fs.mkdirSync(dir,{recursive:true});"
        "fs.writeFileSync(issueFile,issueContent,'utf8');"
        "let skillContent='';"
        "try{if(srcSkill&&fs.existsSync(srcSkill)&&fs.statSync(srcSkill).isFile()){skillContent=fs.readFileSync(srcSkill,'utf8');}}catch{}"
        "if(!skillContent.trim())skillContent=fallbackSkill;"
        "if(dstSkill){fs.writeFileSync(dstSkill,skillContent,'utf8');}\" "
        f"{quote(workspace_dir)} {quote(issue_file)} {quote(encode_b64(issue_content))} "
        f"{quote(source_skill_file)} {quote(skill_file)} {quote(encode_b64(FALLBACK_SKILL))}"
    )


# Process detection


def list_processes_using(path: str, windows: bool) -> str:
    """List processes holding files under ``path`` open.

    On Windows the output is JSON (``[{Name, ProcessId}]``), elsewhere it is
    ``lsof`` columns.
    """
    if windows:
        escaped = path.replace("/", "\\").replace("\\", "\\\\").replace("'", "''")
        return (
            'powershell -NoProfile -Command "Get-CimInstance Win32_Process | '
            f"Where-Object {{ $_.CommandLine -like '*{escaped}*' -or ($_.ExecutablePath -like '*{escaped}*') }} | "
            'Select-Object Name,ProcessId | ConvertTo-Json -Compress"'
        )
    return f"lsof +D {quote(path)} 2>/dev/null || true"
