#!/usr/bin/python3

### Idle hibernation for a game server process.
### Watches for player activity and suspends the server (SIGSTOP) when nobody
### has been around for a while, waking it up again (SIGCONT) when a
### connection attempt or other activity is observed.

__version__ = "0.3.0"
__author__ = "hibernation-monitor contributors"
__license__ = "GPL"
__product__ = "hibernation-monitor"

import argparse
import enum
import glob
import logging
import os
import re
import signal
import sys
import tempfile
import threading
import time
from os import getpid, kill, unlink
from subprocess import CalledProcessError, TimeoutExpired, check_output

import yaml


#########################
## Errors
#########################


class HibernationError(Exception):
    pass


class ProbeUnavailable(HibernationError):
    """An activity source could not be queried.  Counts as "no evidence"."""


class ProcessError(HibernationError):
    pass


class ProcessNotFound(ProcessError):
    """The supervised process is gone."""


class SignalDeliveryFailed(ProcessError):
    """The OS refused to deliver a suspend/resume signal."""


class StoreIOFailure(HibernationError):
    """The persistent state could not be read or written."""


#########################
## Configuration section
#########################

# Default config file search paths (in order of preference)
CONFIG_SEARCH_PATHS = [
    "/etc/hibernation-monitor.yaml",
    "/etc/hibernation-monitor.yml",
]

CONFIG_SECTION = "hibernation-monitor"


def _parse_bool(value):
    """Parse boolean from string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    return str(value).strip().lower() in ("true", "yes", "1", "on")


# Each entry: config_key -> (type_converter, env_var_name, file_key_aliases)
CONFIG_SCHEMA = {
    "enabled": (_parse_bool, "ENABLE_HIBERNATION", ["enable-hibernation"]),
    "idle_timeout": (int, "HIBERNATION_TIMEOUT", ["timeout"]),
    "check_interval": (float, "HIBERNATION_CHECK_INTERVAL", ["interval"]),
    "server_port": (int, "SERVER_PORT", ["port"]),
    "startup_delay": (float, "HIBERNATION_STARTUP_DELAY", []),
    "state_dir": (str, "HIBERNATION_STATE_DIR", []),
    "server_log": (str, "HIBERNATION_SERVER_LOG", []),
    "log_file": (str, "HIBERNATION_LOG_FILE", []),
    "process_pattern": (str, "HIBERNATION_PROCESS_PATTERN", []),
    "join_pattern": (str, "HIBERNATION_JOIN_PATTERN", []),
    "leave_pattern": (str, "HIBERNATION_LEAVE_PATTERN", []),
    "log_tail_lines": (int, "HIBERNATION_LOG_TAIL_LINES", []),
    "log_freshness": (float, "HIBERNATION_LOG_FRESHNESS", []),
    "probe_timeout": (float, "HIBERNATION_PROBE_TIMEOUT", []),
    "debug_logging": (_parse_bool, "HIBERNATION_DEBUG_LOGGING", ["debug"]),
    "debug_checkstate": (_parse_bool, "HIBERNATION_DEBUG_CHECKSTATE", []),
}


def get_defaults():
    """Get default configuration values."""
    return {
        "enabled": False,
        "idle_timeout": 300,
        "check_interval": 30.0,
        "server_port": 25565,
        "startup_delay": 30.0,
        "state_dir": "/home/container/.hibernation",
        "server_log": "/home/container/logs/latest.log",
        "log_file": "/home/container/hibernation.log",
        "process_pattern": "HytaleServer.jar",
        "join_pattern": "joined the game",
        "leave_pattern": "left the game",
        "log_tail_lines": 100,
        "log_freshness": 60.0,
        "probe_timeout": 10.0,
        "debug_logging": False,
        "debug_checkstate": False,
    }


def _convert(key, value, source):
    """Run value through the schema converter, or return None with a warning."""
    converter = CONFIG_SCHEMA[key][0]
    try:
        return converter(value)
    except (ValueError, TypeError) as e:
        logging.warning(f"Invalid value for {source}: {value} - {e}")
        return None


def load_from_file(path=None):
    """Settings from the YAML config file, keyed by config key.

    The settings may sit at the top level or under a hibernation-monitor
    section.  Hyphenated keys and the schema aliases are accepted.
    """
    paths = [path] if path else CONFIG_SEARCH_PATHS
    filepath = next((p for p in paths if os.path.exists(p)), None)
    if filepath is None:
        return {}
    try:
        with open(filepath) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logging.warning(f"Failed to load config from {filepath}: {e}")
        return {}
    if isinstance(data, dict):
        data = data.get(CONFIG_SECTION, data)
    if not isinstance(data, dict):
        logging.warning(f"Ignoring {filepath}: expected a mapping of settings")
        return {}

    aliases = {alias: key for key, (_, _, names) in CONFIG_SCHEMA.items() for alias in names}
    file_config = {}
    for name, value in data.items():
        key = aliases.get(name, name.replace("-", "_"))
        if key not in CONFIG_SCHEMA:
            logging.warning(f"Unknown config key ignored: {name}")
            continue
        value = _convert(key, value, f"{filepath}:{name}")
        if value is not None:
            file_config[key] = value
    return file_config


def load_from_env(environ=None):
    """Settings taken from environment variables."""
    if environ is None:
        environ = os.environ
    env_config = {}
    for key, (_, env_var, _) in CONFIG_SCHEMA.items():
        if env_var in environ:
            value = _convert(key, environ[env_var], env_var)
            if value is not None:
                env_config[key] = value
    return env_config


def load_config(args, environ=None):
    """Defaults, overridden by the config file, the environment and the command line, in that order."""
    final = get_defaults()
    final.update(load_from_file(getattr(args, "config", None)))
    final.update(load_from_env(environ))
    final.update({key: getattr(args, key) for key in CONFIG_SCHEMA if getattr(args, key, None) is not None})
    return final


def create_argument_parser():
    """Create argument parser with all configuration options."""
    p = argparse.ArgumentParser(
        description="Suspend an idle game server process and wake it up on activity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration priority (highest to lowest):
  1. Command-line arguments
  2. Environment variables (ENABLE_HIBERNATION, HIBERNATION_*, SERVER_PORT)
  3. Config file (--config or auto-detected)
  4. Built-in defaults

Config file search order (first found is used):
  /etc/hibernation-monitor.yaml
  /etc/hibernation-monitor.yml

Example usage:
  ENABLE_HIBERNATION=1 hibernation-monitor
  hibernation-monitor --enable --idle-timeout=600 --server-port=5520
""",
    )

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument(
        "--config",
        "-c",
        metavar="PATH",
        help="YAML configuration file path",
    )

    p.add_argument(
        "--enable",
        dest="enabled",
        action="store_true",
        default=None,
        help="Enable hibernation (the monitor exits immediately unless enabled)",
    )
    p.add_argument(
        "--disable",
        dest="enabled",
        action="store_false",
        help="Disable hibernation",
    )
    p.add_argument(
        "--debug",
        "--debug-logging",
        dest="debug_logging",
        action="store_true",
        default=None,
        help="Enable debug logging",
    )
    p.add_argument(
        "--debug-checkstate",
        dest="debug_checkstate",
        action="store_true",
        default=None,
        help="Warn if the server's process state does not match the expected state after a signal",
    )

    # Timing options
    p.add_argument(
        "--idle-timeout",
        dest="idle_timeout",
        type=int,
        metavar="SECONDS",
        help="Seconds without activity before the server is suspended (default: 300)",
    )
    p.add_argument(
        "--check-interval",
        dest="check_interval",
        type=float,
        metavar="SECONDS",
        help="Sleep interval between checks (default: 30)",
    )
    p.add_argument(
        "--startup-delay",
        dest="startup_delay",
        type=float,
        metavar="SECONDS",
        help="Wait before the first check, giving the server time to start (default: 30)",
    )
    p.add_argument(
        "--probe-timeout",
        dest="probe_timeout",
        type=float,
        metavar="SECONDS",
        help="Timeout for external commands used by the activity probes (default: 10)",
    )

    # Server identity and activity sources
    p.add_argument(
        "--server-port",
        dest="server_port",
        type=int,
        metavar="PORT",
        help="Port inspected for established connections (default: 25565)",
    )
    p.add_argument(
        "--process-pattern",
        dest="process_pattern",
        metavar="REGEX",
        help="Pattern matched against command lines to find the server (default: HytaleServer.jar)",
    )
    p.add_argument(
        "--server-log",
        dest="server_log",
        metavar="PATH",
        help="Server log inspected for join/leave messages",
    )
    p.add_argument(
        "--join-pattern",
        dest="join_pattern",
        metavar="REGEX",
        help="Log pattern for a player joining (default: 'joined the game')",
    )
    p.add_argument(
        "--leave-pattern",
        dest="leave_pattern",
        metavar="REGEX",
        help="Log pattern for a player leaving (default: 'left the game')",
    )
    p.add_argument(
        "--log-tail-lines",
        dest="log_tail_lines",
        type=int,
        metavar="N",
        help="Number of server log lines to inspect (default: 100)",
    )
    p.add_argument(
        "--log-freshness",
        dest="log_freshness",
        type=float,
        metavar="SECONDS",
        help="A server log modified this recently counts as activity (default: 60)",
    )

    # Files
    p.add_argument(
        "--state-dir",
        dest="state_dir",
        metavar="PATH",
        help="Directory holding the persistent state",
    )
    p.add_argument(
        "--log-file",
        dest="log_file",
        metavar="PATH",
        help="File the monitor appends its own messages to",
    )

    return p


class config:
    """
    Configuration namespace - populated at startup by init_config().

    Access configuration values as config.idle_timeout, config.server_port, etc.
    """

    pass


def init_config(args=None, environ=None):
    """Initialize the config namespace from all configuration sources."""
    if args is None:
        args = argparse.Namespace()
    cfg = load_config(args, environ)
    for key, value in cfg.items():
        setattr(config, key, value)
    return cfg


def _init_default_config():
    for key, value in get_defaults().items():
        setattr(config, key, value)


_init_default_config()


def setup_logging(log_file=None, debug=False):
    """One timestamped line per message, to stderr and appended to log_file."""
    fmt = logging.Formatter("[%(asctime)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(fmt)
    root.addHandler(handler)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            logging.warning(f"Cannot write log file {log_file}: {e}")
        else:
            file_handler.setFormatter(fmt)
            root.addHandler(file_handler)


#########################
## Persistent state
#########################


class RunState(enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class StateStore:
    """Base class for the persistent state of the monitor.

    Holds the run state (active or suspended), the time activity was last
    observed and the pid of the process that was suspended.  Writes must
    be durable when the method returns, as the monitor may be killed and
    restarted at any point.
    """

    def initialize(self, now=None):
        raise NotImplementedError()

    def read_run_state(self):
        raise NotImplementedError()

    def mark_suspended(self):
        raise NotImplementedError()

    def mark_active(self):
        raise NotImplementedError()

    def read_last_activity(self):
        raise NotImplementedError()

    def write_last_activity(self, timestamp):
        raise NotImplementedError()

    def read_cached_pid(self):
        raise NotImplementedError()

    def write_cached_pid(self, pid):
        raise NotImplementedError()


class FileStateStore(StateStore):
    """State kept as small files in a directory.

    * hibernated - marker, present while the server is suspended
    * last_activity - integer seconds since epoch
    * server.pid - pid of the suspended server
    """

    HIBERNATED = "hibernated"
    LAST_ACTIVITY = "last_activity"
    PID_FILE = "server.pid"

    def __init__(self, state_dir):
        self.state_dir = state_dir
        self.marker_path = os.path.join(state_dir, self.HIBERNATED)
        self.last_activity_path = os.path.join(state_dir, self.LAST_ACTIVITY)
        self.pid_path = os.path.join(state_dir, self.PID_FILE)

    def initialize(self, now=None):
        try:
            os.makedirs(self.state_dir, exist_ok=True)
        except OSError as e:
            raise StoreIOFailure(f"cannot create state directory {self.state_dir}: {e}") from e
        if not os.path.exists(self.last_activity_path):
            self.write_last_activity(int(time.time()) if now is None else now)

    def read_run_state(self):
        try:
            os.stat(self.marker_path)
        except FileNotFoundError:
            return RunState.ACTIVE
        except OSError as e:
            raise StoreIOFailure(f"cannot stat {self.marker_path}: {e}") from e
        return RunState.SUSPENDED

    def mark_suspended(self):
        self._write(self.marker_path, "")

    def mark_active(self):
        try:
            unlink(self.marker_path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StoreIOFailure(f"cannot remove {self.marker_path}: {e}") from e
        self._sync_dir()

    def read_last_activity(self):
        text = self._read(self.last_activity_path)
        if text is None:
            raise StoreIOFailure(f"{self.last_activity_path} is missing")
        try:
            return int(text.strip())
        except ValueError as e:
            raise StoreIOFailure(f"{self.last_activity_path} is corrupt: {text!r}") from e

    def write_last_activity(self, timestamp):
        self._write(self.last_activity_path, "%d\n" % timestamp)

    def read_cached_pid(self):
        text = self._read(self.pid_path)
        if not text or not text.strip():
            return None
        try:
            return int(text.strip())
        except ValueError:
            logging.warning(f"Ignoring corrupt pid file {self.pid_path}: {text!r}")
            return None

    def write_cached_pid(self, pid):
        self._write(self.pid_path, "%d\n" % pid)

    def _read(self, path):
        try:
            with open(path) as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreIOFailure(f"cannot read {path}: {e}") from e

    def _write(self, path, text):
        ## write to a temp file and rename it in place, so a crash never
        ## leaves a half-written file behind
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".tmp-")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                try:
                    unlink(tmp_path)
                except FileNotFoundError:
                    pass
                raise
        except OSError as e:
            raise StoreIOFailure(f"cannot write {path}: {e}") from e
        self._sync_dir()

    def _sync_dir(self):
        try:
            fd = os.open(self.state_dir, os.O_RDONLY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError as e:
            raise StoreIOFailure(f"cannot sync {self.state_dir}: {e}") from e


#########################
## Activity probes
#########################


class ActivityProbe:
    """Base class for activity probes.

    probe() returns True if there is evidence of player activity right
    now.  It may raise ProbeUnavailable (or OSError) if the data source
    is missing - the collector will count that as no evidence.
    """

    name = None

    def probe(self):
        raise NotImplementedError()


def tail_lines(path, num_lines, block_size=8192):
    """Return the last num_lines lines of a file, reading backwards from the end."""
    if num_lines <= 0:
        return []
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        pos = f.tell()
        data = b""
        ## one extra newline, as the last line is normally newline-terminated
        while pos > 0 and data.count(b"\n") <= num_lines:
            step = min(block_size, pos)
            pos -= step
            f.seek(pos)
            data = f.read(step) + data
    lines = data.decode("utf-8", "ignore").splitlines()
    return lines[-num_lines:]


class LogPatternProbe(ActivityProbe):
    """More recent joins than leaves in the tail of the server log means
    that somebody is presumably still online.  This is a heuristic, it
    will be wrong if leave messages are missing.
    """

    name = "log-pattern"

    def __init__(self, log_path, join_pattern, leave_pattern, num_lines=100):
        self.log_path = log_path
        self.join_re = re.compile(join_pattern)
        self.leave_re = re.compile(leave_pattern)
        self.num_lines = num_lines

    def count(self):
        """Returns (joins, leaves) in the tail of the log."""
        try:
            lines = tail_lines(self.log_path, self.num_lines)
        except FileNotFoundError as e:
            raise ProbeUnavailable(f"server log {self.log_path} not found") from e
        joins = sum(1 for line in lines if self.join_re.search(line))
        leaves = sum(1 for line in lines if self.leave_re.search(line))
        return joins, leaves

    def probe(self):
        joins, leaves = self.count()
        logging.debug("log pattern probe: %s joins, %s leaves" % (joins, leaves))
        return joins > leaves and joins > 0


class LogFreshnessProbe(ActivityProbe):
    """A server that has written to its log recently is considered active."""

    name = "log-freshness"

    def __init__(self, log_path, freshness=60, clock=time.time):
        self.log_path = log_path
        self.freshness = freshness
        self.clock = clock

    def probe(self):
        try:
            mtime = os.stat(self.log_path).st_mtime
        except FileNotFoundError as e:
            raise ProbeUnavailable(f"server log {self.log_path} not found") from e
        age = self.clock() - mtime
        logging.debug("log freshness probe: log age %.0fs" % age)
        return age < self.freshness


## /proc/net/tcp state code for ESTABLISHED
TCP_ESTABLISHED = "01"


class ConnectionProbe(ActivityProbe):
    """Established TCP connections on the server port."""

    name = "network"

    def __init__(self, port, timeout=10, proc_net_files=("/proc/net/tcp", "/proc/net/tcp6")):
        self.port = port
        self.timeout = timeout
        self.proc_net_files = proc_net_files

    def count_netstat(self):
        try:
            output = check_output(["netstat", "-an"], timeout=self.timeout).decode("utf-8", "ignore")
        except (FileNotFoundError, PermissionError) as e:
            raise ProbeUnavailable(f"netstat not available: {e}") from e
        except (CalledProcessError, TimeoutExpired) as e:
            raise ProbeUnavailable(f"netstat failed: {e}") from e
        count = 0
        for line in output.splitlines():
            fields = line.split()
            if len(fields) < 6 or not fields[0].startswith("tcp"):
                continue
            local_address, state = fields[3], fields[5]
            if state == "ESTABLISHED" and local_address.rsplit(":", 1)[-1] == str(self.port):
                count += 1
        return count

    def count_proc_net(self):
        count = 0
        found = False
        for path in self.proc_net_files:
            try:
                with open(path) as f:
                    lines = f.readlines()[1:]
            except OSError:
                continue
            found = True
            for line in lines:
                fields = line.split()
                if len(fields) < 4:
                    continue
                try:
                    local_port = int(fields[1].rsplit(":", 1)[-1], 16)
                except ValueError:
                    continue
                if fields[3] == TCP_ESTABLISHED and local_port == self.port:
                    count += 1
        if not found:
            raise ProbeUnavailable("no readable %s" % " or ".join(self.proc_net_files))
        return count

    def count(self):
        try:
            return self.count_netstat()
        except ProbeUnavailable as e:
            logging.debug(f"{e} - falling back to /proc/net")
            return self.count_proc_net()

    def probe(self):
        connections = self.count()
        logging.debug("network probe: %s established connections on port %s" % (connections, self.port))
        return connections > 0


class ActivityCollector:
    """Runs a set of independent probes.  Any probe reporting activity is enough."""

    def __init__(self, probes):
        self.probes = list(probes)

    def ordered(self, prefer=None):
        if not prefer:
            return list(self.probes)
        first = [p for p in self.probes if p.name in prefer]
        return first + [p for p in self.probes if p.name not in prefer]

    def probe(self, prefer=None):
        for probe in self.ordered(prefer):
            try:
                if probe.probe():
                    logging.debug("activity observed by %s probe" % probe.name)
                    return True
            except (ProbeUnavailable, OSError) as e:
                logging.debug(f"{probe.name} probe unavailable: {e}")
            except Exception:
                logging.critical("Exception ignored in %s probe" % probe.name, exc_info=True)
        return False


#########################
## Process control
#########################


class ProcessController:
    """Finds the server process by command line pattern and sends it signals."""

    def __init__(self, pattern, proc_root="/proc"):
        self.pattern = re.compile(pattern)
        self.proc_root = proc_root

    def read_cmdline(self, pid):
        try:
            with open(os.path.join(self.proc_root, str(pid), "cmdline"), "rb") as f:
                raw = f.read()
        except (FileNotFoundError, ProcessLookupError, PermissionError):
            return None
        return raw.rstrip(b"\0").replace(b"\0", b" ").decode("utf-8", "ignore")

    def read_state(self, pid):
        """The single-letter process state from the stat file, or None if the process is gone."""
        try:
            with open(os.path.join(self.proc_root, str(pid), "stat"), "rb") as f:
                stats_tx = f.read().decode("utf-8", "ignore")
        except (FileNotFoundError, ProcessLookupError):
            return None
        return stats_tx.rsplit(")", 1)[1].split()[0]

    def locate(self):
        """Lowest pid whose command line matches the pattern, ignoring ourselves."""
        own_pid = getpid()
        pids = []
        for path in glob.glob(os.path.join(self.proc_root, "[0-9]*")):
            try:
                pids.append(int(os.path.basename(path)))
            except ValueError:
                continue
        for pid in sorted(pids):
            if pid == own_pid:
                continue
            cmdline = self.read_cmdline(pid)
            if cmdline and self.pattern.search(cmdline):
                return pid
        return None

    def is_alive(self, pid):
        if pid is None:
            return False
        try:
            kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True

    def resolve_for_resume(self, cached_pid):
        """A suspended process may not be found through the normal
        lookup, so the pid we suspended wins if it's still around and
        still runs the server (pids get reused).
        """
        if self.is_alive(cached_pid):
            cmdline = self.read_cmdline(cached_pid)
            if cmdline and self.pattern.search(cmdline):
                return cached_pid
            logging.warning("Cached pid %s is no longer the server, ignoring it" % cached_pid)
        return self.locate()

    def _signal(self, pid, sig):
        try:
            kill(pid, sig)
        except ProcessLookupError as e:
            raise ProcessNotFound(f"pid {pid} not found") from e
        except OSError as e:
            raise SignalDeliveryFailed(f"cannot send {signal.Signals(sig).name} to pid {pid}: {e}") from e

    def suspend(self, pid):
        self._signal(pid, signal.SIGSTOP)

    def resume(self, pid):
        self._signal(pid, signal.SIGCONT)


#########################
## Decision engine
#########################


class Action(enum.Enum):
    NONE = "none"
    SUSPEND = "suspend"
    RESUME = "resume"


class DecisionEngine:
    """Runs one decision cycle at a time.

    Active + activity: reset the idle clock.
    Active + idle for idle_timeout seconds: suspend the server.
    Suspended + activity: resume the server and reset the idle clock.

    The stored run state is only changed after the signal has been
    delivered.  At the start of each cycle it is compared with the state
    of the server process, and corrected if the two disagree.
    """

    def __init__(self, store, collector, controller, idle_timeout, clock=time.time, debug_checkstate=False):
        self.store = store
        self.collector = collector
        self.controller = controller
        self.idle_timeout = idle_timeout
        self.clock = clock
        self.debug_checkstate = debug_checkstate

    def start(self, now=None):
        """Prepare the store when the monitor starts.

        The idle clock restarts with the monitor, so a server that has been
        idle while the monitor was down gets a full timeout before it is
        hibernated.  A hibernated server keeps its timestamp.
        """
        if now is None:
            now = int(self.clock())
        self.store.initialize(now)
        if self.store.read_run_state() == RunState.ACTIVE:
            self.store.write_last_activity(now)

    def step(self, now=None):
        """Run one cycle and return the action committed.

        Raises ProcessNotFound if the server can't be found at all.
        """
        if now is None:
            now = int(self.clock())

        try:
            run_state = self.store.read_run_state()
        except StoreIOFailure as e:
            logging.error(f"ERROR: Cannot read hibernation state, skipping this check: {e}")
            return Action.NONE

        pid = self.find_target(run_state)
        if pid is None:
            raise ProcessNotFound("server process not found")

        run_state = self.reconcile(pid, run_state, now)
        if run_state is None:
            return Action.NONE

        if run_state == RunState.SUSPENDED:
            return self.step_suspended(pid, now)
        return self.step_active(pid, now)

    def reconcile(self, pid, run_state, now):
        """Bring the stored run state in line with the process state.

        The state directory outlives both the monitor and the server, so a
        leftover marker may describe a server that has since been restarted.
        Returns the corrected run state, or None if it could not be saved.
        """
        state = self.controller.read_state(pid)
        if state is None:
            return run_state
        stopped = state == "T"
        try:
            if run_state == RunState.SUSPENDED and not stopped:
                logging.warning("Server (PID: %s) is running, but recorded as hibernated - marking it active" % pid)
                self.store.mark_active()
                self.store.write_last_activity(now)
                return RunState.ACTIVE
            if run_state == RunState.ACTIVE and stopped:
                logging.warning("Server (PID: %s) is stopped, but recorded as active - marking it hibernated" % pid)
                self.store.write_cached_pid(pid)
                self.store.mark_suspended()
                return RunState.SUSPENDED
        except StoreIOFailure as e:
            logging.error(f"ERROR: Cannot save corrected hibernation state: {e}")
            return None
        return run_state

    def find_target(self, run_state):
        if run_state == RunState.SUSPENDED:
            try:
                cached_pid = self.store.read_cached_pid()
            except StoreIOFailure as e:
                logging.warning(f"Cannot read cached server pid: {e}")
                cached_pid = None
            return self.controller.resolve_for_resume(cached_pid)
        return self.controller.locate()

    def step_suspended(self, pid, now):
        if not self.collector.probe(prefer=(ConnectionProbe.name,)):
            return Action.NONE

        logging.info("Waking up server (PID: %s) - Activity detected" % pid)
        try:
            self.controller.resume(pid)
        except ProcessError as e:
            logging.error(f"ERROR: Failed to wake server: {e}")
            return Action.NONE
        self.check_state(pid, should_be_suspended=False)

        try:
            self.store.mark_active()
        except StoreIOFailure as e:
            ## SIGCONT is harmless to repeat, the wake-up will be retried next cycle
            logging.error(f"ERROR: Server woken up, but the state could not be saved: {e}")
            return Action.NONE
        try:
            self.store.write_last_activity(now)
        except StoreIOFailure as e:
            logging.error(f"ERROR: Cannot save activity timestamp: {e}")
        logging.info("Server woken up successfully")
        return Action.RESUME

    def step_active(self, pid, now):
        if self.collector.probe():
            try:
                self.store.write_last_activity(now)
            except StoreIOFailure as e:
                logging.error(f"ERROR: Cannot save activity timestamp: {e}")
            return Action.NONE

        try:
            last_activity = self.store.read_last_activity()
        except StoreIOFailure as e:
            logging.warning(f"Activity timestamp unreadable, restarting the idle clock: {e}")
            try:
                self.store.write_last_activity(now)
            except StoreIOFailure as e:
                logging.error(f"ERROR: Cannot save activity timestamp: {e}")
            return Action.NONE

        idle_time = now - last_activity
        if idle_time < self.idle_timeout:
            logging.info("No players online - hibernating in %ss" % (self.idle_timeout - idle_time))
            return Action.NONE

        return self.hibernate(pid)

    def hibernate(self, pid):
        logging.info("Hibernating server (PID: %s) - No players for %ss" % (pid, self.idle_timeout))
        try:
            self.controller.suspend(pid)
        except ProcessError as e:
            logging.error(f"ERROR: Failed to hibernate server: {e}")
            return Action.NONE
        self.check_state(pid, should_be_suspended=True)

        try:
            self.store.write_cached_pid(pid)
            self.store.mark_suspended()
        except StoreIOFailure as e:
            logging.error(f"ERROR: Cannot save hibernation state, resuming server: {e}")
            try:
                self.controller.resume(pid)
            except ProcessError as e:
                logging.critical(f"Server (PID: {pid}) is stopped, but could not be resumed: {e}")
            return Action.NONE

        logging.info("Server hibernated successfully")
        return Action.SUSPEND

    def check_state(self, pid, should_be_suspended):
        if not self.debug_checkstate:
            return
        ## SIGSTOP is delivered asynchronously, give the kernel a moment
        time.sleep(0.05)
        state = self.controller.read_state(pid)
        if state is None:
            logging.warning("Pid %s should be %s, but is gone" % (pid, "suspended" if should_be_suspended else "running"))
        elif (state == "T") != should_be_suspended:
            logging.warning("Pid %s - state: %s, should_be_suspended: %s - mismatch" % (pid, state, should_be_suspended))


#########################
## Main loop
#########################


class MonitorLoop:
    def __init__(self, engine, interval, startup_delay=0):
        self.engine = engine
        self.interval = interval
        self.startup_delay = startup_delay

    def run(self, stop_event=None):
        """Run cycles until the server is gone or stop_event is set.  Returns the exit code."""
        if stop_event is None:
            stop_event = threading.Event()

        if stop_event.wait(self.startup_delay):
            logging.info("Shutdown requested, exiting monitor")
            return 0

        while not stop_event.wait(self.interval):
            try:
                self.engine.step()
            except ProcessNotFound:
                logging.info("Server process not found, exiting monitor")
                return 0
            except Exception:
                logging.critical("Exception ignored, retrying next check", exc_info=True)

        logging.info("Shutdown requested, exiting monitor")
        return 0


def build_engine(cfg=config):
    store = FileStateStore(cfg.state_dir)
    collector = ActivityCollector(
        [
            LogPatternProbe(cfg.server_log, cfg.join_pattern, cfg.leave_pattern, cfg.log_tail_lines),
            LogFreshnessProbe(cfg.server_log, cfg.log_freshness),
            ConnectionProbe(cfg.server_port, cfg.probe_timeout),
        ]
    )
    controller = ProcessController(cfg.process_pattern)
    return DecisionEngine(store, collector, controller, cfg.idle_timeout, debug_checkstate=cfg.debug_checkstate)


def install_signal_handlers(stop_event):
    def _stop(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def main(argv=None):
    """Main entry point for hibernation-monitor."""
    p = create_argument_parser()
    args = p.parse_args(argv)

    init_config(args)

    if not config.enabled:
        return 0

    setup_logging(config.log_file, config.debug_logging)
    logging.info(
        "Starting hibernation monitor (timeout: %ss, check: %ss)" % (config.idle_timeout, config.check_interval)
    )

    engine = build_engine(config)
    try:
        engine.start()
    except StoreIOFailure as e:
        logging.critical(f"Cannot initialize hibernation state: {e}")
        return 1

    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    return MonitorLoop(engine, config.check_interval, config.startup_delay).run(stop_event)


if __name__ == "__main__":
    sys.exit(main())
