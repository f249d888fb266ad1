#!/usr/bin/env python3
"""borg-go: run BorgBackup with the typical config to create, prune, and check backups."""
from __future__ import annotations

import argparse
import asyncio
import glob
import grp
import gzip
import math
import os
import platform
import pwd
import re
import shlex
import shutil
import signal
import socket
import stat
import subprocess
import sys
from contextlib import contextmanager, suppress
from datetime import datetime
from typing import TYPE_CHECKING, Iterator, NamedTuple, NoReturn, TextIO

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

if TYPE_CHECKING:
    from types import FrameType

APPNAME = "borg-go"
VERBOSE = 1

COMMANDS = ("create", "prune", "check", "compact")
TRAILING_COMMANDS = ("list", "log", "link")

LOCK_NAME = "borg-go.lock"
HC_URL = "https://hc-ping.com"
HC_UUID_NAME = "healthchecks_UUID"
ARCHIVE_GLOB = "{hostname}-*"
ARCHIVE_NAME = "{hostname}-{now:%Y-%m-%dT%H:%M:%S%Z}"
N_LOG_GENERATIONS = 7
N_LARGEST = 12

# borg prints the item status letter after the log level, e.g.
# "2024-05-01 02:00:13,412 INFO A /home/user/notes.txt"
CHANGED_ITEM_RE = re.compile(r"^.*INFO [AMC] (.*)$")
ERROR_ITEM_RE = re.compile(r"^.*INFO E (.*)$")

# a \r at the very end may be the first half of \r\n, so it waits for the next chunk
LINE_END_RE = re.compile(rb"(\r\n|\n|\r(?!\Z))")
READ_CHUNK_SIZE = 2**16


class LoginUser(NamedTuple):
    """The human user behind the (possibly sudo'ed) process."""

    name: str
    group: str
    home: str


class BorgEnv(NamedTuple):
    """Resolved run environment shared by the borg commands."""

    config_dir: str
    logging_dir: str
    log_file: str
    logging_conf: str
    repo_uri: str
    user: LoginUser
    local: bool
    dry_run: bool
    mount_reqd: bool


class CmdResult(NamedTuple):
    """Command result."""

    stdout: str
    stderr: str
    returncode: int


class CommandLine(NamedTuple):
    """Parsed command line."""

    commands: list[str]
    cmd_args: list[str]
    rec_roots: list[str]
    local: bool
    check_all: bool
    dry_run: bool
    verbose: int


COLORS = {
    "green": "\033[92m",
    "magenta": "\033[95m",
    "yellow": "\033[93m",
    "red": "\033[91m",
    "orange": "\033[33m",
}


def style(text: str, color: str | None = None, *, bold: bool = False) -> str:
    """Return styled text."""
    color_code = COLORS.get(color, "")  # type: ignore[arg-type]
    bold_code = "\033[1m" if bold else ""
    reset_code = "\033[0m"
    return f"{bold_code}{color_code}{text}{reset_code}"


def sanitize(s: str) -> str:
    """Return a sanitized version of the string."""
    return s.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def log(message: str, level: str = "info") -> None:
    """Log a message with the specified log level."""
    levels = {"info": "", "warning": "[WARNING] ", "error": "[ERROR] "}
    output = sys.stderr if level in {"warning", "error"} else sys.stdout
    message = sanitize(message)
    print(f"{style(APPNAME, bold=True)}: {levels[level]}{message}", file=output)


def log_info(message: str) -> None:
    """Log an info message to stdout."""
    log(message, "info")


def log_warn(message: str) -> None:
    """Log a warning message to stderr."""
    log(style(message, "orange"), "warning")


def log_error(message: str) -> None:
    """Log an error message to stderr."""
    log(style(message, "red", bold=True), "error")


def log_verbose(level: int, message: str) -> None:
    """Log an info message only when the verbosity is at least `level`."""
    if VERBOSE >= level:
        log_info(message)


def abort(message: str, code: int = 2, env: BorgEnv | None = None) -> NoReturn:
    """Log an error, signal the failure to Healthchecks, and exit."""
    log_error(message)
    if env is not None:
        ping_hc(env, "failure", f"{now_str()} {message}")
    sys.exit(code)


def terminate_script(
    _signal_number: int,
    _frame: FrameType | None,
) -> None:
    """Terminate the script on SIGINT or SIGTERM."""
    log_info("Interrupted, exiting.")
    sys.exit(1)


def now_str() -> str:
    """Return the current local time, e.g. '2024-05-01 02:00:00 CEST'."""
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


# -----------------------------------------------------------------------------
# Command line
# -----------------------------------------------------------------------------

EPILOG = """\
examples:
  borg-go create prune check
  borg-go --local ~/./Documents create
  borg-go --local list
  borg-go --local check --repair
  borg-go link ../../Sync/Config/borg
"""


def build_parser() -> argparse.ArgumentParser:
    """Return the top-level argument parser."""
    parser = argparse.ArgumentParser(
        prog=APPNAME,
        description="Run BorgBackup with the typical config to create, prune, and check backups.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--local",
        action="store_true",
        help="Back up to the local repo in BORG_LOCAL_REPO, for use when the regular repo"
        " is not available. Paths given right after --local are used as recursion roots"
        " instead of the configured ones. Does not require root, uses a separate log"
        " file and never pings Healthchecks.",
    )
    parser.add_argument(
        "--all",
        dest="check_all",
        action="store_true",
        help="Check all archives instead of only the latest one of this host.",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Run create and/or prune without changing the repo. Compact is not run"
        " automatically after prune on a dry-run. Also increases verbosity.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity of borg-go. Borg itself runs with --info.",
    )
    parser.add_argument(
        "args",
        nargs=argparse.REMAINDER,
        metavar="COMMAND [ARGS ...]",
        help="One or more of create, prune, check, compact; or a single list, log or"
        " link command followed by its arguments. Options after a single command are"
        " passed on to borg.",
    )
    return parser


def split_command_line(
    tokens: list[str],
    args: argparse.Namespace,
    parser: argparse.ArgumentParser,
) -> CommandLine:
    """Split the remaining tokens into commands, command arguments and recursion roots.

    Global options are recognised anywhere until the command arguments start, so
    `borg-go create -n` is a dry-run rather than `borg create -n`.
    """
    commands: list[str] = []
    cmd_args: list[str] = []
    rec_roots: list[str] = []
    local = args.local
    check_all = args.check_all
    dry_run = args.dry_run
    verbose = args.verbose

    for i, token in enumerate(tokens):
        if token in COMMANDS:
            commands.append(token)
        elif token in TRAILING_COMMANDS:
            commands.append(token)
            cmd_args = tokens[i + 1 :]
            break
        elif token == "--local":
            local = True
        elif token == "--all":
            check_all = True
        elif token in {"-n", "--dry-run"}:
            dry_run = True
        elif token in {"-v", "--verbose"}:
            verbose += 1
        elif token.startswith("-"):
            if not commands:
                parser.error(f"No command, but received option '{token}'")
            if len(commands) > 1:
                parser.error(f"More than one command, but received option '{token}'")
            cmd_args = tokens[i:]
            break
        elif local and not commands:
            rec_roots.append(token)
        else:
            parser.error(f"Unrecognized option: '{token}'")

    return CommandLine(
        commands=commands,
        cmd_args=cmd_args,
        rec_roots=rec_roots,
        local=local,
        check_all=check_all,
        dry_run=dry_run,
        verbose=1 + verbose + int(local) + int(dry_run),
    )


def parse_arguments(argv: list[str] | None = None) -> CommandLine:
    """Parse command-line arguments and return the parsed command line."""
    parser = build_parser()
    args = parser.parse_args(argv)
    return split_command_line(args.args, args, parser)


# -----------------------------------------------------------------------------
# Running commands
# -----------------------------------------------------------------------------


async def async_run_cmd(
    cmd: str,
    *,
    env: dict[str, str] | None = None,
    echo: bool = False,
) -> CmdResult:
    """Run a shell command, streaming its output when `echo` is set."""
    log_verbose(3, f"Running command: {style(cmd, 'green', bold=True)}")

    process = await asyncio.create_subprocess_shell(
        cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )

    # Should not be None because of asyncio.subprocess.PIPE
    assert process.stdout is not None, "Process stdout is None"
    assert process.stderr is not None, "Process stderr is None"

    stdout, stderr = await asyncio.gather(
        read_stream(process.stdout, sys.stdout, echo=echo),
        read_stream(process.stderr, sys.stderr, echo=echo),
    )

    await process.wait()
    assert process.returncode is not None, "Process has not returned"

    if process.returncode != 0:
        msg = style(str(process.returncode), "red", bold=True)
        log_verbose(3, f"Command exit code: {msg}")
    return CmdResult(stdout, stderr, process.returncode)


async def read_stream(
    stream: asyncio.StreamReader,
    output: TextIO,
    *,
    echo: bool,
) -> str:
    """Read each line from the stream, echoing it to `output` if requested.

    Progress displays (e.g. `borg check --progress`) redraw a line with carriage
    returns and no newline, so the stream is read in chunks instead of lines.
    Redrawn segments are echoed as they arrive but not kept in the output.
    """
    lines = []
    pending = b""
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        pending += chunk
        parts = LINE_END_RE.split(pending)
        pending = parts.pop()
        for segment, line_end in zip(parts[::2], parts[1::2]):
            line_str = segment.decode("utf-8", "replace").rstrip()
            if line_end == b"\r":
                if echo:
                    print(line_str, end="\r", file=output, flush=True)
                continue
            lines.append(line_str)
            if echo:
                print(line_str, file=output)

    line_str = pending.decode("utf-8", "replace").rstrip()
    if line_str and not pending.endswith(b"\r"):
        lines.append(line_str)
        if echo:
            print(line_str, file=output)
    return "\n".join(lines)


def run_cmd(
    cmd: str,
    *,
    env: dict[str, str] | None = None,
    echo: bool = False,
) -> CmdResult:
    """Synchronously run a shell command."""
    return asyncio.run(async_run_cmd(cmd, env=env, echo=echo))


def run_borg(args: list[str], env: dict[str, str] | None = None) -> CmdResult:
    """Run borg with the given arguments, streaming its output to the terminal."""
    cmd = shlex.join(["borg", *args])
    log_verbose(2, f"running {style(cmd, 'green')}")
    return run_cmd(cmd, env=env, echo=True)


def run_hook(name: str, *args: str, env: BorgEnv | None = None) -> None:
    """Run the helper executable `name` from PATH; a failure is fatal."""
    path = shutil.which(name)
    if path is None:
        abort(f"no executable found for '{name}' on PATH", 9, env)
    result = run_cmd(shlex.join([path, *args]), echo=True)
    if result.returncode != 0:
        abort(f"{name} exited with code {result.returncode}", result.returncode, env)


# -----------------------------------------------------------------------------
# Environment
# -----------------------------------------------------------------------------


def machine_id() -> tuple[str, str]:
    """Return the short lower-case hostname and OS name ('linux', 'macos', ...)."""
    mach_name = socket.gethostname().split(".")[0].lower()
    mach_os = platform.system().lower()
    if mach_os == "darwin":
        mach_os = "macos"
    return mach_name, mach_os


def login_user(config_dir: str | None = None) -> LoginUser:
    """Return the login user, even when running under sudo, launchd, or systemd.

    Candidates are tried in order: the user who ran sudo, the owner of the
    controlling terminal, the user named in BORG_CONFIG_DIR (e.g.
    /home/user/.config/borg), and finally the effective user.
    """
    names = [os.environ.get("SUDO_USER")]
    with suppress(OSError):
        names.append(os.getlogin())
    if config_dir:
        match = re.match(r"/[^/]+/([^/]+)/", config_dir)
        if match:
            names.append(match.group(1))
    names.append(pwd.getpwuid(os.geteuid()).pw_name)

    for name in names:
        if not name:
            continue
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            continue
        if entry.pw_dir == "/var/empty":  # launchd on macOS
            continue
        return LoginUser(name, grp.getgrgid(entry.pw_gid).gr_name, entry.pw_dir)

    log_error(f"failed to get login user from: {names}")
    sys.exit(2)


def resolve_config_dir(user: LoginUser) -> str:
    """Return BORG_CONFIG_DIR, defaulting to the login user's ~/.config/borg."""
    config_dir = os.environ.get("BORG_CONFIG_DIR")
    if not config_dir:
        config_dir = os.path.join(user.home, ".config", "borg")
        os.environ["BORG_CONFIG_DIR"] = config_dir
    return config_dir


def set_cache_dirs() -> None:
    """Point borg's cache and security dirs at the running user's home.

    Under `sudo -H` this keeps root's borg state out of the login user's home.
    """
    home = os.path.expanduser("~")
    cache_home = os.environ.get("XDG_CACHE_HOME") or os.path.join(home, ".cache")
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(home, ".config")
    os.environ["BORG_CACHE_DIR"] = os.path.join(cache_home, "borg")
    os.environ["BORG_SECURITY_DIR"] = os.path.join(config_home, "borg", "security")


def is_root() -> bool:
    """Return True when running as root."""
    return os.geteuid() == 0


def check_running_user(commands: list[str], *, local: bool) -> None:
    """Require root for commands on the remote repo beyond list and log."""
    if is_root() or local or set(commands) <= {"list", "log"}:
        return
    log_error("root or sudo required for remote repo commands beyond list")
    sys.exit(3)


@contextmanager
def lock_file(path: str) -> Iterator[None]:
    """Hold the borg-go lock file, refusing to run if it already exists."""
    if os.path.exists(path):
        log_error(f"lock file found: '{path}'")
        sys.exit(2)
    with open(path, "w") as f:
        f.write(f"{os.getpid()}\n")
    try:
        yield
    finally:
        if os.path.exists(path):
            os.remove(path)


def find_borg() -> str:
    """Return the path of the borg executable."""
    borg = shutil.which("borg")
    if borg is None:
        log_error("borg not found on PATH")
        sys.exit(2)
    return borg


def resolve_repo(*, local: bool) -> str:
    """Return the repo URI: '::' for BORG_REPO, or the physical local repo path."""
    if not local:
        if not os.environ.get("BORG_REPO"):
            log_error("BORG_REPO is not set")
            sys.exit(4)
        return "::"

    os.environ.pop("BORG_REPO", None)
    local_repo = os.environ.get("BORG_LOCAL_REPO")
    if not local_repo:
        log_error("local repo required; set BORG_LOCAL_REPO")
        sys.exit(6)

    repo_uri = os.path.realpath(os.path.expanduser(local_repo))
    readme = os.path.join(repo_uri, "README")
    try:
        with open(readme, errors="replace") as f:
            initialized = "borg" in f.read()
    except OSError:
        initialized = False
    if not initialized:
        log_error(f"local repo check failed; is '{repo_uri}' initialized?")
        sys.exit(7)

    log_verbose(2, f"using local repo: '{repo_uri}'")
    return repo_uri


def select_log_paths(
    config_dir: str,
    logging_conf: str,
    *,
    local: bool,
    dry_run: bool,
) -> tuple[str, str, str]:
    """Return the logging dir, log file and logging config for this run.

    Dry-runs and local runs get their own log file and logging config, e.g.
    borg_logging.conf becomes borg_logging-dryrun.conf.
    """
    logging_dir = os.path.join(config_dir, "log")
    if dry_run:
        log_file = os.path.join(logging_dir, "borg_dryrun_log")
        logging_conf = re.sub(r"\.conf$", "-dryrun.conf", logging_conf)
    elif local:
        log_file = os.path.join(logging_dir, "borg_local_log")
        logging_conf = re.sub(r"\.conf$", "-local.conf", logging_conf)
    else:
        log_file = os.path.join(logging_dir, "borg_log")
    return logging_dir, log_file, logging_conf


def mount_required() -> bool:
    """Return True if BORG_MNT_REQD asks for the repo to be mounted."""
    value = os.environ.get("BORG_MNT_REQD", "").strip()
    try:
        return int(value or 0) != 0
    except ValueError:
        log_error(f"BORG_MNT_REQD should be an integer, not '{value}'")
        sys.exit(2)


def prepare_env(
    config_dir: str,
    user: LoginUser,
    *,
    local: bool,
    dry_run: bool,
) -> BorgEnv:
    """Resolve the repo and logging setup, exporting what borg needs."""
    repo_uri = resolve_repo(local=local)

    logging_conf = os.environ.get("BORG_LOGGING_CONF")
    if not logging_conf:
        log_error("BORG_LOGGING_CONF is not set")
        sys.exit(5)

    logging_dir, log_file, logging_conf = select_log_paths(
        config_dir,
        logging_conf,
        local=local,
        dry_run=dry_run,
    )
    if log_file != os.path.join(logging_dir, "borg_log"):
        log_verbose(2, f"using log: '{log_file}'")
    if not os.path.exists(logging_conf):
        log_error(f"BORG_LOGGING_CONF file not found: '{logging_conf}'")
        sys.exit(5)
    os.environ["BORG_LOGGING_CONF"] = logging_conf

    os.makedirs(logging_dir, exist_ok=True)
    with open(log_file, "a"):
        pass

    return BorgEnv(
        config_dir=config_dir,
        logging_dir=logging_dir,
        log_file=log_file,
        logging_conf=logging_conf,
        repo_uri=repo_uri,
        user=user,
        local=local,
        dry_run=dry_run,
        mount_reqd=mount_required(),
    )


def check_ssh_connection(env: BorgEnv) -> None:
    """Check that the remote host of an ssh:// BORG_REPO is reachable."""
    repo = os.environ.get("BORG_REPO", "")
    if not repo.startswith("ssh://"):
        return
    remote = repo[len("ssh://") :].split("/", 1)[0]  # e.g. user@host
    result = run_cmd(shlex.join(["ssh", remote, "true"]), echo=True)
    if result.returncode != 0:
        abort(f"ssh connection to '{remote}' failed", result.returncode, env)


def chown_to_user(path: str, user: LoginUser) -> None:
    """Give `path` to the login user when running as root."""
    if is_root():
        shutil.chown(path, user.name, user.group)


# -----------------------------------------------------------------------------
# Healthchecks
# -----------------------------------------------------------------------------


def read_hc_uuid(config_dir: str) -> str | None:
    """Return the Healthchecks UUID, or None if it is missing or malformed."""
    uuid_file = os.path.join(config_dir, HC_UUID_NAME)
    if not os.path.exists(uuid_file):
        log_warn(f"skipping ping, uuid_file not found: '{uuid_file}'")
        return None
    with open(uuid_file) as f:
        hc_uuid = f.read().strip()
    if len(hc_uuid) != 36:  # noqa: PLR2004
        log_error(f"hc_uuid not as expected: '{hc_uuid}'")
        return None
    return hc_uuid


def hc_ping_url(hc_uuid: str, hc_signal: str | int) -> str:
    """Return the ping URL; success has no suffix and an exit code is its own suffix."""
    suffix = {"success": "", "start": "start", "failure": "fail"}.get(
        str(hc_signal),
        str(hc_signal),
    )
    url = f"{HC_URL}/{hc_uuid}"
    return f"{url}/{suffix}" if suffix else url


def send_ping(url: str, message: str | None = None) -> str:
    """Send the ping, POSTing the message if there is one, and return the response."""
    session = requests.Session()
    retries = Retry(total=10, backoff_factor=0.5, allowed_methods=None)
    session.mount("https://", HTTPAdapter(max_retries=retries))
    with session:
        if message:
            response = session.post(url, data=message.encode("utf-8"), timeout=10)
        else:
            response = session.get(url, timeout=10)
        response.raise_for_status()
        return response.text.strip()


def ping_hc(env: BorgEnv, hc_signal: str | int, message: str | None = None) -> bool:
    """Signal job progress to Healthchecks; returns True if the ping was accepted."""
    if env.local:
        return False
    hc_uuid = read_hc_uuid(env.config_dir)
    if hc_uuid is None:
        return False

    try:
        response = send_ping(hc_ping_url(hc_uuid, hc_signal), message)
    except requests.RequestException as e:
        log_error(f"Healthchecks ping failed: {e}")
        return False

    if response != "OK":
        log_error(f"Healthchecks response: '{response}'")
        return False
    log_info(f"{hc_signal} signal sent to Healthchecks")
    return True


# -----------------------------------------------------------------------------
# Log files
# -----------------------------------------------------------------------------


def read_log(log_file: str) -> list[str]:
    """Return the lines of a log file, tolerating undecodable bytes."""
    with open(log_file, errors="surrogateescape") as f:
        return f.read().splitlines()


def append_separator(log_file: str) -> None:
    """Separate the output of consecutive borg commands in a non-empty log."""
    if os.path.exists(log_file) and os.path.getsize(log_file) > 0:
        with open(log_file, "a") as f:
            f.write("\n\n")


def gzip_file(path: str) -> str:
    """Compress `path` to `path.gz`, replacing the original."""
    gz_path = f"{path}.gz"
    with open(path, "rb") as f_in, gzip.open(gz_path, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    shutil.copymode(path, gz_path)
    os.remove(path)
    return gz_path


def rotate_logs(log_file: str, generations: int = N_LOG_GENERATIONS) -> None:
    """Rotate the log, keeping `log.0` plain and older generations gzipped."""

    def nonempty(path: str) -> bool:
        return os.path.exists(path) and os.path.getsize(path) > 0

    # move older files, starting with the oldest
    for i in range(generations - 2, -1, -1):
        src = f"{log_file}.{i}"
        dst = f"{log_file}.{i + 1}"
        if nonempty(src):
            os.replace(src, dst)
            gzip_file(dst)
        elif nonempty(f"{src}.gz"):
            os.replace(f"{src}.gz", f"{dst}.gz")

    if nonempty(log_file):
        shutil.copy2(log_file, f"{log_file}.0")
        if is_root():
            st = os.stat(log_file)
            os.chown(f"{log_file}.0", st.st_uid, st.st_gid)

    with open(log_file, "w"):
        pass


def grep_context(lines: list[str], marker: str, before: int, after: int) -> list[str]:
    """Return the lines around each occurrence of `marker`, like `grep -B -A`."""
    groups: list[list[int]] = []
    for i, line in enumerate(lines):
        if marker not in line:
            continue
        start, end = max(0, i - before), min(len(lines) - 1, i + after)
        if groups and start <= groups[-1][1] + 1:
            groups[-1][1] = max(groups[-1][1], end)
        else:
            groups.append([start, end])

    output: list[str] = []
    for n, (start, end) in enumerate(groups):
        if n:
            output.append("--")
        output.extend(lines[start : end + 1])
    return output


def set_aside_stats(
    log_file: str,
    suffix: str,
    marker: str,
    before: int,
    after: int,
) -> str | None:
    """Copy the stats block out of the log so the next run cannot overwrite it.

    Returns the block, or None if it was not as expected, in which case the
    extracted lines are left in `<stats file>.new` for inspection.
    """
    stats_file = f"{log_file}_{suffix}"
    block = grep_context(read_log(log_file), marker, before, after)
    with open(f"{stats_file}.new", "w", errors="surrogateescape") as f:
        f.writelines(f"{line}\n" for line in block)

    if len(block) != before + after + 1:
        return None
    log_info("recording stats block")
    os.replace(f"{stats_file}.new", stats_file)
    return "\n".join(block)


# -----------------------------------------------------------------------------
# Changed-file sizes
# -----------------------------------------------------------------------------


class ChangedItems(NamedTuple):
    """File paths that borg logged as changed or unreadable."""

    changed: list[str]
    errors: list[str]


def extract_items(lines: list[str]) -> ChangedItems:
    """Extract the paths of added/modified/changed and error items from a borg log."""
    changed, errors = [], []
    for line in lines:
        match = CHANGED_ITEM_RE.match(line)
        if match:
            changed.append(match.group(1))
            continue
        match = ERROR_ITEM_RE.match(line)
        if match:
            errors.append(match.group(1))
    return ChangedItems(changed, errors)


def disk_usage(path: str) -> int:
    """Return the disk usage of `path` in bytes, like `du -s`.

    Directory trees are walked without following symlinks, and hard-linked files
    are only counted once.
    """
    st = os.lstat(path)
    total = st.st_blocks * 512
    if not stat.S_ISDIR(st.st_mode):
        return total

    seen: set[tuple[int, int]] = set()
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            try:
                st = os.lstat(os.path.join(root, name))
            except FileNotFoundError:
                continue
            if st.st_nlink > 1 and not stat.S_ISDIR(st.st_mode):
                if (st.st_dev, st.st_ino) in seen:
                    continue
                seen.add((st.st_dev, st.st_ino))
            total += st.st_blocks * 512
    return total


def human_size(num_bytes: float) -> str:
    """Return a size in the style of `du -h`, e.g. 0, 4.0K, 12K, 1.5M."""
    if num_bytes < 1024:  # noqa: PLR2004
        return str(int(num_bytes))
    for unit in "KMGTPE":
        num_bytes /= 1024
        if num_bytes < 1024 or unit == "E":  # noqa: PLR2004
            break
    # du rounds up
    tenths = math.ceil(num_bytes * 10)
    if tenths < 100:  # noqa: PLR2004
        return f"{tenths / 10:.1f}{unit}"
    return f"{math.ceil(num_bytes)}{unit}"


def write_lines(path: str, lines: list[str]) -> None:
    """Write lines to a file."""
    with open(path, "w", errors="surrogateescape") as f:
        f.writelines(f"{line}\n" for line in lines)


def chfile_sizes(log_file: str, user: LoginUser) -> int | None:
    """Record the disk usage of the files borg reported as changed in the log.

    Writes `<log>_chfiles`, `<log>_chfile_sizes`, and, when needed,
    `<log>_errfiles` and `<log>_chfile_fails`. Returns the total size in bytes, or
    None if no changed files were found.
    """
    if not os.access(log_file, os.R_OK):
        log_error(f"could not read log file: '{log_file}'")
        sys.exit(3)

    items = extract_items(read_log(log_file))

    errf_file = f"{log_file}_errfiles"
    if items.errors:
        write_lines(errf_file, items.errors)
        chown_to_user(errf_file, user)
        log_warn(f"Error files found, see {errf_file}:")
        for path in items.errors[:10]:
            log_info(f"    {path}")

    if not items.changed:
        log_warn("no changed files found in log")
        return None
    chf_file = f"{log_file}_chfiles"
    write_lines(chf_file, items.changed)
    chown_to_user(chf_file, user)

    sizes: list[tuple[int, str]] = []
    fails: list[str] = []
    for path in items.changed:
        try:
            sizes.append((disk_usage(path), path))
        except OSError as e:
            # moved or deleted since the backup
            fails.append(f"cannot access '{path}': {e.strerror}")

    du_file = f"{log_file}_chfile_sizes"
    write_lines(du_file, [f"{human_size(size)}\t{path}" for size, path in sizes])
    chown_to_user(du_file, user)

    fails_file = f"{log_file}_chfile_fails"
    if fails:
        write_lines(fails_file, fails)
    elif os.path.exists(fails_file):
        os.remove(fails_file)

    total = sum(size for size, _ in sizes)
    log_info(f"Files and sizes output to {du_file}")
    log_info(
        f"Found {len(items.changed)} filenames, reported sizes on {len(sizes)}"
        f" (total {human_size(total)})",
    )
    log_info(f"Largest {N_LARGEST}:")
    for size, path in sorted(sizes, reverse=True)[:N_LARGEST]:
        log_info(f"    {human_size(size)}\t{path}")
    return total


# -----------------------------------------------------------------------------
# Pre-backup listings
# -----------------------------------------------------------------------------

# (output file, program that must be installed, shell commands)
PACKAGE_LISTS = [
    ("usr-local-tree.txt", "tree", ["tree -a /usr/local"]),
    ("npm-list-g.txt", "npm", ["npm --version", "npm list -g --depth=0"]),
    ("pip-list.txt", "pip", ["pip --version", "pip list"]),
    ("pipx-list-global.txt", "pipx", ["pipx --version", "pipx list --global"]),
    ("flatpak-list-app.txt", "flatpak", ["flatpak --version", "flatpak list --app"]),
]

OS_PACKAGE_LISTS = {
    "linux": [
        ("dpkg-installed-applications.txt", "dpkg", ["dpkg --get-selections"]),
        ("apt-manual-packages.txt", "apt-mark", ["apt-mark showmanual"]),
        ("dconf-dump_backup.dump", "dconf", ["dconf dump /"]),
    ],
    "macos": [
        ("applications-list.txt", "ls", ["ls -l /Applications/ /Users/*/Applications/"]),
    ],
}

VSCODE_USER_FILES = ("settings.json", "keybindings.json", "snippets")


def write_listing(path: str, cmds: list[str]) -> None:
    """Write the concatenated output of shell commands to `path`."""
    outputs = [run_cmd(cmd).stdout for cmd in cmds]
    with open(path, "w") as f:
        f.write("\n".join(outputs) + "\n")


def prep_backup_dir(user: LoginUser, mach_os: str) -> str:
    """Save lists of installed software for reinstallation after a disk failure.

    The lists go to ~/.local/backups of the login user, which is then included in
    the backup.
    """
    bakdir = os.path.join(user.home, ".local", "backups")
    os.makedirs(bakdir, exist_ok=True)

    if os.path.isdir("/usr/local"):
        write_listing(
            os.path.join(bakdir, "usr-local-list.txt"),
            [
                "echo /usr/local/",
                "ls -l /usr/local/",
                "ls -l /usr/local/*",
                "ls -l /usr/local/share/man",
            ],
        )

    # the (p/m)locate db contains paths for most files on the system
    locate_db = os.environ.get("LOCATE_PATH") or "/var/lib/plocate/plocate.db"
    if os.access(locate_db, os.R_OK):
        shutil.copy2(locate_db, bakdir)

    if (
        "PIPX_GLOBAL_HOME" not in os.environ
        and os.path.isdir("/usr/local/opt/pipx")
    ):
        os.environ["PIPX_GLOBAL_HOME"] = "/usr/local/opt/pipx"

    if mach_os not in OS_PACKAGE_LISTS:
        log_warn(f"no package lists defined for OS: '{mach_os}'")
    for fname, program, cmds in PACKAGE_LISTS + OS_PACKAGE_LISTS.get(mach_os, []):
        if shutil.which(program):
            write_listing(os.path.join(bakdir, fname), cmds)

    # Session Buddy backups of the Chrome state, usually saved to ~/Downloads
    downloads = os.path.join(user.home, "Downloads")
    for pattern in ["session_buddy_backup*.json", "*/session_buddy_backup*.json"]:
        for path in glob.glob(os.path.join(downloads, pattern)):
            if os.path.isfile(path):
                shutil.move(path, os.path.join(bakdir, os.path.basename(path)))

    vscode_dir = os.path.join(user.home, ".config", "Code", "User")
    if os.access(os.path.join(vscode_dir, "settings.json"), os.R_OK):
        vsc_bakdir = os.path.join(bakdir, "vscode-user_config")
        os.makedirs(vsc_bakdir, exist_ok=True)
        for name in VSCODE_USER_FILES:
            src = os.path.join(vscode_dir, name)
            if os.path.isdir(src):
                shutil.copytree(src, os.path.join(vsc_bakdir, name), dirs_exist_ok=True)
            elif os.path.exists(src):
                shutil.copy2(src, vsc_bakdir)

    if is_root():
        for root, dirs, files in os.walk(bakdir):
            for name in [root, *(os.path.join(root, n) for n in dirs + files)]:
                shutil.chown(name, user.name, user.group)
    return bakdir


# -----------------------------------------------------------------------------
# Borg commands
# -----------------------------------------------------------------------------


def is_borg_warning(returncode: int) -> bool:
    """Return True for borg's warning exit codes: 1 and 100-127."""
    return returncode == 1 or 100 <= returncode <= 127  # noqa: PLR2004


def handle_borg_rc(returncode: int, step: str, env: BorgEnv) -> str:
    """Handle borg's exit code: relay warnings, abort on errors.

    Returns a warning message for the Healthchecks ping, empty on success.
    """
    if returncode == 0:
        return ""
    if is_borg_warning(returncode):
        warnings = [line for line in read_log(env.log_file) if "WARNING" in line]
        message = "\n".join(
            [
                f"{step}(): borg exited with code {returncode}; WARNINGs from {env.log_file}:",
                *warnings,
            ],
        )
        log_warn(message)
        return message + "\n"
    abort(f"{step}(): borg exited with code {returncode}", returncode, env)


def archive_spec(repo_uri: str) -> str:
    """Return the repo and archive name for a new archive."""
    if repo_uri.endswith("::"):
        return f"{repo_uri}{ARCHIVE_NAME}"
    return f"{repo_uri}::{ARCHIVE_NAME}"


def pattern_files(config_dir: str, *, with_rec_roots: bool = True) -> list[str]:
    """Return the non-empty pattern (and recursion root) files in alphanumeric order."""
    names = "patterns|rec_roots" if with_rec_roots else "patterns"
    pattern = re.compile(rf"^({names})[^.]*$")
    return [
        path
        for path in sorted(glob.glob(os.path.join(config_dir, "*")))
        if pattern.match(os.path.basename(path))
        and os.path.isfile(path)
        and os.path.getsize(path) > 0
    ]


def recursion_roots(paths: list[str]) -> list[str]:
    """Return the recursion root patterns ('R ...' lines) of the given files."""
    roots = []
    for path in paths:
        with open(path, errors="replace") as f:
            roots.extend(line.rstrip("\n") for line in f if line.startswith("R "))
    return roots


def create_args(
    env: BorgEnv,
    cmd_args: list[str],
    rec_roots: list[str],
) -> list[str]:
    """Assemble the arguments of `borg create`.

    The first matching pattern wins, so patterns given on the command line are
    placed before the configured pattern files.
    """
    if rec_roots:
        for path in rec_roots:
            if not os.access(path, os.R_OK):
                abort(f"Recursion root path not found: '{path}'", 3, env)
        files = pattern_files(env.config_dir, with_rec_roots=False)
    else:
        files = pattern_files(env.config_dir)
        if not files:
            abort("No pattern or recursion root files found in BORG_CONFIG_DIR.", 2, env)
        roots = recursion_roots(files)
        if not roots:
            abort("No recursion root patterns found in pattern files.", 3, env)
        dry_run = " --dry-run" if env.dry_run else ""
        log_info(f"calling borg create{dry_run} with recursion roots:")
        log_info(f"    {',  '.join(roots)}")

    # A = added, M = modified, C = changed during backup, E = read error; a
    # dry-run only reports x (excluded) and - (would be included)
    opts = [
        "--dry-run" if env.dry_run else "--stats",
        "--list",
        "--filter=x" if env.dry_run else "--filter=AMCE",
        "--info",
        "--show-rc",
        "--exclude-caches",
        "--exclude-if-present",
        ".nobackup",
        "--one-file-system",
    ]
    pattern_args = [arg for path in files for arg in ("--patterns-from", path)]
    return [*opts, *cmd_args, *pattern_args, archive_spec(env.repo_uri), *rec_roots]


def run_create(
    env: BorgEnv,
    commands: list[str],
    cmd_args: list[str],
    rec_roots: list[str],
) -> int:
    """Create a new backup archive and record what changed."""
    log_info(style("Starting backup ...", "yellow"))

    if not env.dry_run:
        ping_hc(env, "start", f"borg cmds: {' '.join(commands)}")
        log_info("running pre-backup script")
        prep_backup_dir(env.user, machine_id()[1])
        rotate_logs(env.log_file)

    args = create_args(env, cmd_args, rec_roots)
    result = run_borg(["create", *args])
    hc_msg = handle_borg_rc(result.returncode, "create", env)

    lines = read_log(env.log_file)
    if lines and "INFO terminating" in lines[-1]:
        log_verbose(2, lines[-1])

    if not env.dry_run:
        log_info("recording sizes of changed files")
        chfile_sizes(env.log_file, env.user)

        stats = set_aside_stats(env.log_file, "create-stats", "INFO Duration", 6, 10)
        if stats is None:
            msg = f"borg-create stats block from log not as expected: {env.log_file}_create-stats.new"
            log_warn(msg)
            hc_msg += msg
        else:
            hc_msg += f"borg-create stats:\n{stats}"
        ping_hc(env, "success", hc_msg)
    return result.returncode


def show_prune_rules(log_file: str, width: int | None = None) -> None:
    """Print the keep/prune decisions of a dry-run, one unwrapped line each."""
    if width is None:
        width = shutil.get_terminal_size().columns - 4
    for line in read_log(log_file):
        if " (rule: " not in line:
            continue
        match = re.match(r"^.* INFO (.*)$", line)
        text = match.group(1) if match else line
        print(sanitize(text[:width]))


def run_prune(env: BorgEnv, cmd_args: list[str]) -> int:
    """Remove old archives of this host according to the keep rules.

    Keep rules count intervals with backups only: every archive of the last 14
    days, then the latest per week for 2 weeks, per month for 6 months, and per
    year for 3 years. See https://borgbackup.readthedocs.io/en/stable/usage/prune.html
    """
    dry_run = " --dry-run" if env.dry_run else ""
    log_info(style(f"Calling borg prune{dry_run}...", "yellow"))
    append_separator(env.log_file)

    args = [
        "prune",
        "-a",
        ARCHIVE_GLOB,
        "--keep-within",
        "14d",
        "--keep-weekly",
        "2",
        "--keep-monthly",
        "6",
        "--keep-yearly",
        "3",
        "--dry-run" if env.dry_run else "--stats",
        "--list",
        "--info",
        "--show-rc",
        *cmd_args,
        env.repo_uri,
    ]
    result = run_borg(args)
    hc_msg = handle_borg_rc(result.returncode, "prune", env)

    if env.dry_run:
        show_prune_rules(env.log_file)
        return result.returncode

    stats = set_aside_stats(env.log_file, "prune-stats", "INFO Deleted data", 2, 5)
    if stats is None:
        msg = f"borg-prune stats block from log not as expected:\n{env.log_file}_prune-stats.new\n"
        log_warn(msg)
        hc_msg += msg
    else:
        hc_msg += f"borg-prune stats:\n{stats}"
    ping_hc(env, "success", hc_msg)
    return result.returncode


def run_check(env: BorgEnv, cmd_args: list[str], *, check_all: bool) -> int:
    """Check the repo and the latest archive (or all archives) for consistency."""
    arch_sel = [] if check_all else ["--last", "1", "-a", ARCHIVE_GLOB]
    log_info(style(f"Calling borg check {' '.join(arch_sel[:2])}...", "yellow"))
    append_separator(env.log_file)

    args = ["check", *arch_sel, "--info", "--progress", "--show-rc", *cmd_args, env.repo_uri]
    result = run_borg(args)
    handle_borg_rc(result.returncode, "check", env)
    return result.returncode


def run_compact(env: BorgEnv, cmd_args: list[str]) -> int:
    """Free repo disk space by compacting segments, mostly useful after prune."""
    log_info(style("Calling borg compact ...", "yellow"))
    append_separator(env.log_file)

    args = ["compact", "--threshold", "1", "--info", "--show-rc", *cmd_args, env.repo_uri]
    result = run_borg(args)
    handle_borg_rc(result.returncode, "compact", env)
    return result.returncode


def run_list(env: BorgEnv, commands: list[str], cmd_args: list[str]) -> int:
    """List recent archives, or the contents of an archive."""
    if len(commands) > 1:
        log_warn("ignoring commands other than list")
    args = cmd_args or ["--consider-checkpoints", "--last=10", env.repo_uri]
    # keep list output out of the log file
    child_env = dict(os.environ, BORG_LOGGING_CONF="")
    return run_borg(["list", *args], env=child_env).returncode


def view_log(env: BorgEnv, commands: list[str], cmd_args: list[str]) -> int:
    """Page the active log file."""
    if len(commands) > 1:
        log_warn("ignoring commands other than log")
    cmd = [
        "less",
        "-iJMR",
        "--buffers=1024",
        "--jump-target=.2",
        "--tabs=4",
        "--shift=4",
        "--use-color",
        *cmd_args,
        env.log_file,
    ]
    return subprocess.run(cmd, check=False).returncode


# -----------------------------------------------------------------------------
# Config links
# -----------------------------------------------------------------------------

# (file in the config repo, generic link name in BORG_CONFIG_DIR)
CONFIG_LINKS = [
    ("borg_logging_{name}_{os}.conf", "borg_logging.conf"),
    ("borg_logging_{name}_{os}-dryrun.conf", "borg_logging-dryrun.conf"),
    ("borg_logging_{name}_{os}-local.conf", "borg_logging-local.conf"),
    ("patterns_{name}_{os}", "patterns"),
    ("rec_roots_{name}_{os}", "rec_roots"),
    ("healthchecks_UUID_{name}", HC_UUID_NAME),
]


def parse_link_arguments(cmd_args: list[str]) -> argparse.Namespace:
    """Parse the arguments of the link command."""
    mach_name, mach_os = machine_id()
    parser = argparse.ArgumentParser(
        prog=f"{APPNAME} link",
        description="Link the per-machine config files into BORG_CONFIG_DIR.",
    )
    parser.add_argument(
        "config_repo",
        help="Directory holding the per-machine config files."
        " Relative paths are relative to BORG_CONFIG_DIR.",
    )
    parser.add_argument("-m", "--mach-name", default=mach_name, help="Machine name.")
    parser.add_argument("-o", "--mach-os", default=mach_os, help="Machine OS.")
    return parser.parse_args(cmd_args)


def link_config(config_dir: str, config_repo: str, mach_name: str, mach_os: str) -> list[str]:
    """Create the generic config links; returns the links that were made."""
    os.makedirs(config_dir, exist_ok=True)
    repo_dir = os.path.join(config_dir, config_repo)
    if not os.path.isdir(repo_dir):
        log_error(f"config repo not found: '{repo_dir}'")
        sys.exit(2)

    linked = []
    for template, link_name in CONFIG_LINKS:
        target = os.path.join(config_repo, template.format(name=mach_name, os=mach_os))
        link = os.path.join(config_dir, link_name)
        if not os.path.exists(os.path.join(config_dir, target)):
            log_warn(f"not linking {link_name}, file not found: '{target}'")
            continue
        if os.path.islink(link):
            os.remove(link)
        elif os.path.exists(link):
            log_warn(f"not replacing regular file: '{link}'")
            continue
        os.symlink(target, link)
        log_info(f"{link} -> {target}")
        linked.append(link)
    return linked


# -----------------------------------------------------------------------------
# Main
# -----------------------------------------------------------------------------


def owned_log_files(logging_dir: str, uid: int = 0) -> list[str]:
    """Return the borg and borg-go log files in `logging_dir` owned by `uid`."""
    paths = []
    for path in sorted(glob.glob(os.path.join(logging_dir, "*"))):
        name = os.path.basename(path)
        if not (re.match(r"^borg_.*log", name) or re.match(r"^borg-go_.*_out$", name)):
            continue
        if os.stat(path).st_uid == uid:
            paths.append(path)
    return paths


def post_run(env: BorgEnv, statuses: dict[str, int]) -> None:
    """Unmount, give the log files to the login user, and report the run status."""
    if env.mount_reqd:
        log_info("Unmounting backup repo")
        run_hook("bgo_check_mount", "-u", env=env)

    if is_root():
        for path in owned_log_files(env.logging_dir):
            shutil.chown(path, env.user.name, env.user.group)

    post_msg = "borg-go done"
    for step, returncode in statuses.items():
        status = "success" if returncode == 0 else str(returncode)
        post_msg += f" ({step} status: {status})"
    log_info(style(post_msg, "magenta"))


def borg_go(cmdline: CommandLine) -> int:
    """Run the requested borg commands in order; returns the exit code."""
    if not cmdline.commands:
        log_error("No valid commands received, stay frosty.")
        return 2

    user = login_user(os.environ.get("BORG_CONFIG_DIR"))
    config_dir = resolve_config_dir(user)

    if cmdline.commands[-1] == "link":
        if len(cmdline.commands) > 1:
            log_warn("ignoring commands other than link")
        args = parse_link_arguments(cmdline.cmd_args)
        link_config(config_dir, args.config_repo, args.mach_name, args.mach_os)
        return 0

    set_cache_dirs()
    check_running_user(cmdline.commands, local=cmdline.local)

    with lock_file(os.path.join(config_dir, LOCK_NAME)):
        find_borg()
        env = prepare_env(
            config_dir,
            user,
            local=cmdline.local,
            dry_run=cmdline.dry_run,
        )

        if env.mount_reqd:
            log_info("Mounting backup repo")
            run_hook("bgo_check_mount", env=env)
        check_ssh_connection(env)

        if "list" in cmdline.commands:
            return run_list(env, cmdline.commands, cmdline.cmd_args)
        if "log" in cmdline.commands:
            return view_log(env, cmdline.commands, cmdline.cmd_args)

        try:
            statuses = run_commands(env, cmdline)
            post_run(env, statuses)
        except Exception as e:  # noqa: BLE001
            # any failure after setup is reported to Healthchecks
            abort(f"{type(e).__name__}: {e}", 1, env)
    return 0


def run_commands(env: BorgEnv, cmdline: CommandLine) -> dict[str, int]:
    """Run the borg commands in order; returns the create and check exit codes."""
    statuses: dict[str, int] = {}
    for cmd in cmdline.commands:
        if cmd == "create":
            statuses["create"] = run_create(
                env,
                cmdline.commands,
                cmdline.cmd_args,
                cmdline.rec_roots,
            )
        elif cmd == "prune":
            run_prune(env, cmdline.cmd_args)
            if not env.dry_run:
                run_compact(env, [])
        elif cmd == "check":
            statuses["check"] = run_check(
                env,
                cmdline.cmd_args,
                check_all=cmdline.check_all,
            )
        elif cmd == "compact":
            run_compact(env, cmdline.cmd_args)
    return statuses


def main() -> None:
    """Main function."""
    cmdline = parse_arguments()
    global VERBOSE
    VERBOSE = cmdline.verbose
    os.umask(0o027)
    signal.signal(signal.SIGINT, terminate_script)
    signal.signal(signal.SIGTERM, terminate_script)
    sys.exit(borg_go(cmdline))


if __name__ == "__main__":
    main()
