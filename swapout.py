#!/usr/bin/python3

### Push the memory of a running process out to swap.
### The process is moved into a small memory cgroup for a while, its
### resident set is watched until it has shrunk, and then the limit and
### the process are put back where they were.
### Needs root (or enough privileges to create cgroups and move pids).

__version__ = "0.1.0"
__author__ = "Jerry Richardson"
__copyright__ = "Copyright 2025, Jerry Richardson"
__license__ = "GPL"
__maintainer__ = "Jerry Richardson"
__email__ = "jerry@jerryslab.com"
__product__ = "swapout"

import argparse
import configparser
import contextlib
import json
import logging
import os
import re
import signal
import sys
import time
from collections import namedtuple
from os import getenv, mkdir, rmdir

import yaml

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib


#########################
## Configuration section
#########################

# Default config file search paths (in order of preference)
CONFIG_SEARCH_PATHS = [
    "/etc/swapout.yaml",
    "/etc/swapout.yml",
    "/etc/swapout.toml",
    "/etc/swapout.json",
    "/etc/swapout.conf",
]


def _parse_bool(value):
    """Parse boolean from string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    return str(value).lower() in ("true", "yes", "1", "on")


# Each entry: config_key -> (type_converter, env_var_name, file_key_aliases)
CONFIG_SCHEMA = {
    "limit_mb": (int, "SWAPOUT_LIMIT_MB", ["limit-mb"]),
    "target_rss_kb": (int, "SWAPOUT_TARGET_RSS_KB", ["target-rss-kb"]),
    "interval": (float, "SWAPOUT_INTERVAL", []),
    "max_iter": (int, "SWAPOUT_MAX_ITER", ["max-iter"]),
    "quiet": (_parse_bool, "SWAPOUT_QUIET", []),
    "debug_logging": (_parse_bool, "SWAPOUT_DEBUG_LOGGING", ["debug-logging", "debug"]),
    "cgroup_root": (str, "SWAPOUT_CGROUP_ROOT", ["cgroup-root"]),
    "proc_root": (str, "SWAPOUT_PROC_ROOT", ["proc-root"]),
}

# Must be > 0, otherwise the default is used
POSITIVE_KEYS = ("limit_mb", "target_rss_kb", "interval", "max_iter")


def load_from_file(path=None):
    """Load configuration from file (auto-detect format by extension)."""
    if path:
        paths = [path]
    else:
        paths = CONFIG_SEARCH_PATHS

    for filepath in paths:
        if not os.path.exists(filepath):
            continue
        ext = os.path.splitext(filepath)[1].lower()
        try:
            if ext in (".yaml", ".yml"):
                return _load_yaml(filepath)
            elif ext == ".toml":
                return _load_toml(filepath)
            elif ext == ".json":
                return _load_json(filepath)
            else:  # .conf, .ini, or unknown
                return _load_ini(filepath)
        except (OSError, ValueError, yaml.YAMLError, configparser.Error) as e:
            logging.warning(f"Failed to load config from {filepath}: {e}")
            continue
    return {}


def _section(data, path):
    """Pick the swapout section (or the whole document) out of a parsed file."""
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level, got {type(data).__name__}")
    section = data.get("swapout", data)
    if not isinstance(section, dict):
        raise ValueError(f"{path}: swapout section must be a mapping, got {type(section).__name__}")
    return section


def _load_yaml(path):
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return _section(data, path)


def _load_toml(path):
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return _section(data, path)


def _load_json(path):
    with open(path) as f:
        data = json.load(f)
    return _section(data, path)


def _load_ini(path):
    parser = configparser.ConfigParser()
    parser.read(path)
    if "swapout" not in parser:
        return {}
    return dict(parser["swapout"])


def load_from_env():
    """Load configuration from environment variables."""
    env_config = {}

    for config_key, (converter, env_var, _) in CONFIG_SCHEMA.items():
        value = getenv(env_var)
        if value is not None:
            try:
                env_config[config_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for {env_var}: {value} - {e}")

    return env_config


def get_defaults():
    """Get default configuration values."""
    return {
        "limit_mb": 8,
        "target_rss_kb": 16384,
        "interval": 1.0,
        "max_iter": 60,
        "quiet": False,
        "debug_logging": False,
        "cgroup_root": "/sys/fs/cgroup",
        "proc_root": "/proc",
    }


def normalize_file_config(file_config):
    """Normalize config keys and values from file config.

    Handles underscore/hyphen differences and type conversions.
    Unknown keys are dropped with a warning.
    """
    normalized = {}

    file_key_to_config = {}
    for config_key, (_, _, aliases) in CONFIG_SCHEMA.items():
        for alias in aliases:
            file_key_to_config[alias] = config_key

    for key, value in file_config.items():
        if not isinstance(key, str):
            logging.warning(f"Unknown config key {key!r} - ignored")
            continue
        norm_key = file_key_to_config.get(key, key.replace("-", "_"))
        if norm_key not in CONFIG_SCHEMA:
            logging.warning(f"Unknown config key {key} - ignored")
            continue
        converter = CONFIG_SCHEMA[norm_key][0]
        try:
            normalized[norm_key] = converter(value)
        except (ValueError, TypeError) as e:
            logging.warning(f"Invalid value for config key {key}: {value} - {e}")

    return normalized


def load_config(args):
    """Merge config from defaults <- file <- env <- CLI.

    Priority order (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults
    """
    defaults = get_defaults()
    final = dict(defaults)

    config_path = getattr(args, "config", None)
    file_config = load_from_file(config_path)
    if file_config:
        final.update(normalize_file_config(file_config))

    final.update(load_from_env())

    # CLI arguments (non-None values only)
    for config_key in CONFIG_SCHEMA:
        value = getattr(args, config_key, None)
        if value is not None:
            final[config_key] = value

    for key in POSITIVE_KEYS:
        if final[key] <= 0:
            logging.warning(f"{key} must be positive, got {final[key]} - using default {defaults[key]}")
            final[key] = defaults[key]

    return final


class SwapoutArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 (not 2) on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _pid(value):
    try:
        pid = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid PID: {value!r}")
    if pid <= 0:
        raise argparse.ArgumentTypeError(f"invalid PID: {value!r}")
    return pid


def create_argument_parser():
    """Create argument parser with all configuration options."""
    p = SwapoutArgumentParser(
        prog="swapout",
        description=(
            "Force a process's memory to be pushed into swap by constraining it to a\n"
            "small cgroup memory limit, then restoring the limit afterwards."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration priority (highest to lowest):
  1. Command-line arguments
  2. Environment variables (SWAPOUT_*)
  3. Config file (--config or the first of /etc/swapout.{yaml,yml,toml,json,conf})
  4. Built-in defaults

Example:
  swapout 12345 -m 8 -r 16384 -i 1 -n 60
""",
    )

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    p.add_argument("pid", metavar="PID", type=_pid, help="Process to push into swap")

    p.add_argument(
        "-m",
        "--limit-mb",
        dest="limit_mb",
        type=int,
        metavar="MB",
        help="Memory limit during swapout (default: 8 MB)",
    )
    p.add_argument(
        "-r",
        "--target-rss-kb",
        dest="target_rss_kb",
        type=int,
        metavar="KB",
        help="Target RSS to reach before stopping (default: 16384 kB)",
    )
    p.add_argument(
        "-i",
        "--interval",
        type=float,
        metavar="SECS",
        help="Poll interval in seconds (default: 1.0)",
    )
    p.add_argument(
        "-n",
        "--max-iter",
        dest="max_iter",
        type=int,
        metavar="N",
        help="Maximum iterations before giving up (default: 60)",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=None,
        help="Less verbose output",
    )
    p.add_argument(
        "-c",
        "--config",
        metavar="PATH",
        help="Configuration file path (auto-detects format by extension)",
    )
    p.add_argument(
        "-d",
        "--debug",
        dest="debug_logging",
        action="store_true",
        default=None,
        help="Enable debug logging",
    )

    return p


class config:
    """
    Configuration namespace - populated at startup by init_config().

    Access configuration values as config.limit_mb, config.cgroup_root, etc.
    """

    pass


def init_config(args=None):
    """Initialize the config namespace from all configuration sources."""
    if args is None:
        args = argparse.Namespace()

    for key, value in load_config(args).items():
        setattr(config, key, value)


def _init_default_config():
    """Initialize config with defaults for module import compatibility."""
    for key, value in get_defaults().items():
        setattr(config, key, value)


_init_default_config()


#########################
## Logging
#########################

# Terminal outcomes.  Shown in --quiet mode, where progress (INFO) is not.
NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")


def setup_logging():
    """Progress goes to stdout, warnings and errors to stderr."""
    if config.debug_logging:
        level = logging.DEBUG
    elif config.quiet:
        level = NOTICE
    else:
        level = logging.INFO

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    logging.basicConfig(format="%(message)s", handlers=[stdout_handler, stderr_handler])
    logging.root.setLevel(level)


#########################
## Errors
#########################


class SwapoutError(Exception):
    """Base exception for all fatal swapout errors."""

    pass


class NoMemoryControllerError(SwapoutError):
    """Neither a cgroup v2 hierarchy nor a v1 memory controller is mounted."""

    pass


class ProcessNotFoundError(SwapoutError):
    """The target process does not exist."""

    pass


class CgroupSetupError(SwapoutError):
    """Creating the scoped cgroup or moving the pid into it failed."""

    pass


class LimitError(SwapoutError):
    """Writing the temporary memory limit failed."""

    pass


class Interrupted(SwapoutError):
    """A termination signal arrived during the run."""

    def __init__(self, signum):
        super().__init__(f"Interrupted by {signal.Signals(signum).name}")
        self.signum = signum


#########################
## Process memory
#########################

procmeminfo = namedtuple("procmeminfo", ("pid", "rss_kb", "swap_kb"))

_FIRST_INT = re.compile(r"\d+")


def _first_int(line):
    m = _FIRST_INT.search(line)
    return int(m.group()) if m else 0


def process_exists(pid):
    return os.path.exists(os.path.join(config.proc_root, str(pid)))


def read_proc_meminfo(pid):
    """Sample VmRSS and VmSwap (in kB) from /proc/<pid>/status.

    Returns None if the process is gone.  A field that is not there
    (kernel threads, zombies) reads as 0.
    """
    rss_kb = 0
    swap_kb = 0
    try:
        with open(os.path.join(config.proc_root, str(pid), "status")) as status:
            for line in status:
                if line.startswith("VmRSS:"):
                    rss_kb = _first_int(line)
                elif line.startswith("VmSwap:"):
                    swap_kb = _first_int(line)
    except (FileNotFoundError, ProcessLookupError):
        return None
    return procmeminfo(pid, rss_kb, swap_kb)


#########################
## Cgroup handling
#########################

## One record per supported hierarchy.  controller is the directory of the
## memory controller relative to cgroup_root, and also the controller name
## to look for in /proc/<pid>/cgroup ("" on the unified hierarchy).
cgroup_layout = namedtuple("cgroup_layout", ("version", "controller", "limit_file", "unlimited"))

CGROUP_V2 = cgroup_layout(2, "", "memory.high", "max")
## PAGE_COUNTER_MAX in bytes, what memory.limit_in_bytes reads when unlimited
CGROUP_V1 = cgroup_layout(1, "memory", "memory.limit_in_bytes", "9223372036854771712")

GROUP_PARENT = "swapout"
PROCS_FILE = "cgroup.procs"


def detect_cgroup_version():
    """Return CGROUP_V2, CGROUP_V1 or None if no memory controller is mounted."""
    if os.path.exists(os.path.join(config.cgroup_root, "cgroup.controllers")):
        return CGROUP_V2
    if os.path.exists(os.path.join(config.cgroup_root, CGROUP_V1.controller)):
        return CGROUP_V1
    return None


class CgroupContext:
    """The scoped cgroup of one run, from creation to removal.

    limit_written is set as soon as a write to the limit file has been
    attempted; from then on the limit has to be restored on the way out.
    origin_dir is the cgroup the process was taken from, if known.
    """

    def __init__(self, layout, group_dir):
        self.layout = layout
        self.group_dir = group_dir
        self.procs_path = os.path.join(group_dir, PROCS_FILE)
        self.limit_path = os.path.join(group_dir, layout.limit_file)
        self.backup_limit = ""
        self.has_backup = False
        self.limit_written = False
        self.origin_dir = None

    @property
    def version(self):
        return self.layout.version

    def __repr__(self):
        return f"CgroupContext(v{self.version}, {self.group_dir!r})"


def _write_file(path, value):
    with open(path, "w") as f:
        f.write(value)


def _controller_dir(layout):
    return os.path.join(config.cgroup_root, layout.controller)


def _enable_memory_controller(cgroup_dir):
    """Delegate the memory controller to the children of cgroup_dir.

    Only the unified hierarchy has cgroup.controllers; elsewhere this is a
    no-op.  Best effort - a missing controller shows up later as a limit
    file that cannot be written.
    """
    try:
        with open(os.path.join(cgroup_dir, "cgroup.controllers")) as f:
            available = f.read().split()
    except OSError:
        return
    if "memory" not in available:
        return
    try:
        _write_file(os.path.join(cgroup_dir, "cgroup.subtree_control"), "+memory")
    except OSError as e:
        logging.debug(f"Could not enable memory controller in {cgroup_dir}: {e}")


def _origin_cgroup(pid, layout):
    """Get the memory cgroup directory pid currently belongs to, or None."""
    try:
        with open(os.path.join(config.proc_root, str(pid), "cgroup")) as f:
            for line in f:
                # Format: hierarchy-ID:controller-list:cgroup-path
                parts = line.strip().split(":", 2)
                if len(parts) == 3 and layout.controller in parts[1].split(","):
                    return os.path.join(_controller_dir(layout), parts[2].lstrip("/"))
    except OSError:
        pass
    return None


def create_cgroup(pid, layout):
    """Create swapout/<pid> under the memory controller of layout.

    The swapout parent may already exist.  The per-pid directory must not:
    a concurrent run against the same pid, or the leftover of a run that
    could not clean up, is a setup failure.

    Raises:
        CgroupSetupError: If a directory cannot be created.
    """
    controller_dir = _controller_dir(layout)
    parent = os.path.join(controller_dir, GROUP_PARENT)
    group_dir = os.path.join(parent, str(pid))

    _enable_memory_controller(controller_dir)
    try:
        mkdir(parent, 0o755)
    except FileExistsError:
        pass
    except OSError as e:
        raise CgroupSetupError(f"Could not create {parent}: {e}") from e
    _enable_memory_controller(parent)

    try:
        mkdir(group_dir, 0o755)
    except FileExistsError as e:
        raise CgroupSetupError(
            f"{group_dir} already exists - is another swapout running on pid {pid}, "
            f"or was an earlier run unable to clean up?"
        ) from e
    except OSError as e:
        raise CgroupSetupError(f"Could not create {group_dir}: {e}") from e

    logging.info(f"cgroup v{layout.version} detected, using {group_dir}")
    return CgroupContext(layout, group_dir)


def migrate_pid(ctx, pid):
    """Move pid into the scoped cgroup.

    From here on the kernel accounts the memory of pid to ctx.group_dir.

    Raises:
        CgroupSetupError: If writing to cgroup.procs fails.
    """
    ctx.origin_dir = _origin_cgroup(pid, ctx.layout)
    try:
        _write_file(ctx.procs_path, f"{pid}\n")
    except OSError as e:
        raise CgroupSetupError(f"Failed to move pid {pid} into {ctx.procs_path}: {e}") from e
    logging.info(f"Moved pid {pid} into {ctx.group_dir}")


def _return_pids(ctx):
    """Move whatever is left in the scoped cgroup back to where it came from."""
    if ctx.origin_dir is None:
        return
    try:
        with open(ctx.procs_path) as f:
            pids = f.read().split()
    except OSError as e:
        logging.debug(f"Could not list {ctx.procs_path}: {e}")
        return
    for pid in pids:
        try:
            _write_file(os.path.join(ctx.origin_dir, PROCS_FILE), f"{pid}\n")
            logging.debug(f"Moved pid {pid} back into {ctx.origin_dir}")
        except OSError as e:
            logging.warning(f"Could not move pid {pid} back into {ctx.origin_dir}: {e}")


def cleanup_cgroup(ctx):
    """Remove the scoped cgroup.  Returns True on success.

    Best effort: the kernel may refuse while the group still has members.
    """
    _return_pids(ctx)
    try:
        rmdir(ctx.group_dir)
    except OSError as e:
        logging.warning(f"Could not remove {ctx.group_dir}: {e}")
        return False
    logging.info(f"Removed cgroup {ctx.group_dir}")
    return True


#########################
## Memory limit
#########################


def backup_limit(ctx):
    """Remember the current content of the limit file for restore_limit()."""
    try:
        with open(ctx.limit_path) as f:
            ctx.backup_limit = f.read().rstrip()
    except OSError as e:
        logging.debug(f"Reading {ctx.limit_path} failed: {e}")
        ctx.backup_limit = ""
    ctx.has_backup = bool(ctx.backup_limit)
    if ctx.has_backup:
        logging.info(f"Original limit at {ctx.limit_path}: '{ctx.backup_limit}'")
    else:
        logging.warning(
            f"Could not read original limit at {ctx.limit_path}, "
            f"will restore to '{ctx.layout.unlimited}'"
        )


def apply_limit(ctx, limit_mb):
    """Write limit_mb (in MB) as a byte count to the limit file.

    Raises:
        LimitError: If the limit file cannot be written.
    """
    limit_bytes = limit_mb * 1024 * 1024
    logging.info(f"Applying temporary limit {limit_bytes} to {ctx.limit_path}")
    ctx.limit_written = True
    try:
        _write_file(ctx.limit_path, f"{limit_bytes}\n")
    except OSError as e:
        raise LimitError(f"Failed to set limit at {ctx.limit_path}: {e}") from e
    return limit_bytes


def restore_limit(ctx):
    """Put back the backed up limit, or lift it.  Returns True on success."""
    value = ctx.backup_limit if ctx.has_backup else ctx.layout.unlimited
    logging.info(f"Restoring limit at {ctx.limit_path} to '{value}'")
    try:
        _write_file(ctx.limit_path, f"{value}\n")
    except OSError as e:
        logging.warning(f"Failed to restore limit at {ctx.limit_path}: {e}")
        return False
    return True


## Turned into Interrupted by main() so that a run is rolled back
ROLLBACK_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


@contextlib.contextmanager
def _signals_held(signums=(signal.SIGINT,) + ROLLBACK_SIGNALS):
    """Hold back signals for the duration of the block; they arrive when it ends."""
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, signums)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


@contextlib.contextmanager
def scoped_cgroup(pid, layout):
    """Confine pid to its own cgroup for the duration of the with block.

    However the block is left, a limit that was touched is restored first,
    then the group is removed.  If the group cannot be created there is
    nothing to undo.  Signals are held back while the group is created
    and while it is rolled back, so neither step is cut short.
    """
    ctx = None
    try:
        with _signals_held():
            ctx = create_cgroup(pid, layout)
        backup_limit(ctx)
        migrate_pid(ctx, pid)
        yield ctx
    finally:
        if ctx is not None:
            with _signals_held():
                if ctx.limit_written:
                    restore_limit(ctx)
                cleanup_cgroup(ctx)


#########################
## Main loop
#########################

TARGET_REACHED = "target-reached"
PROCESS_GONE = "process-gone"
ITER_EXHAUSTED = "iter-exhausted"

pollresult = namedtuple("pollresult", ("outcome", "iterations", "sample"))


def poll_until_swapped(pid, target_rss_kb, interval, max_iter):
    """Sample pid until RSS <= target_rss_kb, it exits, or max_iter samples.

    iterations counts lookups, including the one that found the process
    gone.  sample is the last successful one (None if there was none).
    """
    sample = None
    for iteration in range(1, max_iter + 1):
        current = read_proc_meminfo(pid)
        if current is None:
            logging.log(NOTICE, f"Process {pid} no longer exists, stopping.")
            return pollresult(PROCESS_GONE, iteration, sample)
        sample = current

        logging.info("  iter %2d: RSS=%d kB, SWAP=%d kB" % (iteration, sample.rss_kb, sample.swap_kb))

        if sample.rss_kb <= target_rss_kb:
            logging.log(NOTICE, f"Target RSS reached (<= {target_rss_kb} kB), stopping.")
            return pollresult(TARGET_REACHED, iteration, sample)
        if iteration < max_iter:
            time.sleep(interval)

    logging.log(NOTICE, f"Gave up: RSS still above {target_rss_kb} kB after {max_iter} iterations; restoring anyway.")
    return pollresult(ITER_EXHAUSTED, max_iter, sample)


def run_swapout(pid, limit_mb, target_rss_kb, interval, max_iter):
    """Squeeze pid into swap and put everything back.

    Returns the pollresult of the run.

    Raises:
        ProcessNotFoundError, NoMemoryControllerError: Before anything is
            changed.
        CgroupSetupError, LimitError: After rolling back what was changed.
    """
    if not process_exists(pid):
        raise ProcessNotFoundError(f"No such process: {pid}")

    layout = detect_cgroup_version()
    if layout is None:
        raise NoMemoryControllerError(f"No cgroup v1/v2 memory controller detected under {config.cgroup_root}")

    with scoped_cgroup(pid, layout) as ctx:
        apply_limit(ctx, limit_mb)
        logging.info("Forcing swap... polling process memory usage")
        return poll_until_swapped(pid, target_rss_kb, interval, max_iter)


def _raise_interrupted(signum, frame):
    raise Interrupted(signum)


@contextlib.contextmanager
def _rollback_on_signals(signums=ROLLBACK_SIGNALS):
    """Turn termination signals into Interrupted, so the cgroup is rolled back."""
    previous = {signum: signal.signal(signum, _raise_interrupted) for signum in signums}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def main(argv=None):
    """Main entry point for swapout.  Returns the exit status."""
    p = create_argument_parser()
    args = p.parse_args(argv)

    # Initialize configuration from all sources (CLI > env > file > defaults)
    init_config(args)
    setup_logging()

    pid = args.pid
    logging.info(f"swapout: targeting pid {pid}")
    logging.info(
        "limit_mb=%d, target_rss_kb=%d, interval=%.2f, max_iter=%d"
        % (config.limit_mb, config.target_rss_kb, config.interval, config.max_iter)
    )

    try:
        with _rollback_on_signals():
            run_swapout(pid, config.limit_mb, config.target_rss_kb, config.interval, config.max_iter)
    except Interrupted as e:
        logging.error(f"{e} - swapout of pid {pid} aborted")
        return 128 + e.signum
    except KeyboardInterrupt:
        logging.error(f"Interrupted - swapout of pid {pid} aborted")
        return 128 + signal.SIGINT
    except SwapoutError as e:
        logging.error(str(e))
        logging.error(f"swapout of pid {pid} failed")
        return 1

    logging.log(NOTICE, "swapout complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
