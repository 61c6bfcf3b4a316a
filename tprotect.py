#!/usr/bin/python3

### tprotect - adaptive user-space guard protecting a linux host from thrashing.
###
### Watches the system-wide major page fault counter.  When it spikes,
### the process with the most major page faults since the previous scan
### gets a SIGSTOP.  When the counter is quiet again, suspended processes
### get a SIGCONT, one per cycle.  On SIGINT/SIGTERM all suspended
### processes are resumed before exiting.

__version__ = "0.2.0"
__copyright__ = "Copyright 2014-2026, the tprotect developers"
__license__ = "GPL"
__product__ = "tprotect"

import argparse
import configparser
import glob
import json
import logging
import os
import random  ## for the test_mode
import signal
import sys
import threading
from collections import namedtuple
from os import getenv, getpid, kill

import yaml

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Fallback for older Python


class TProtectError(Exception):
    """Base class for tprotect errors."""


class ConfigError(TProtectError, ValueError):
    """Invalid configuration value."""


class PressureSourceError(TProtectError):
    """The system-wide major page fault counter could not be read."""


#########################
## Configuration section
#########################

# Default config file search paths (in order of preference)
CONFIG_SEARCH_PATHS = [
    "/etc/tprotect.yaml",
    "/etc/tprotect.yml",
    "/etc/tprotect.toml",
    "/etc/tprotect.json",
    "/etc/tprotect.conf",
]

DEFAULT_WHITELIST = ["init", "sshd", "bash", "xinit", "X", "chromium-browser"]

## both modes measure the fault delta per interval.
## "shared": no refresh scans, the process scan only runs when freezing
## "independent": also refresh the per-process counts every scan_threshold faults
BASELINE_MODES = ("shared", "independent")


def _parse_bool(value):
    """Parse boolean from string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    return str(value).lower() in ("true", "yes", "1", "on")


def _parse_list(value):
    """Parse space-separated list."""
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    if not value or not str(value).strip():
        return []
    return str(value).split()


# Unified configuration schema
# Each entry: config_key -> (type_converter, env_var_name, file_key_aliases)
CONFIG_SCHEMA = {
    "debug_logging": (_parse_bool, "TPROTECT_DEBUG_LOGGING", ["debug"]),
    "diagnostic_logging": (_parse_bool, "TPROTECT_DIAGNOSTIC_LOGGING", ["diagnostic-logging", "diagnostic"]),
    "interval": (float, "TPROTECT_INTERVAL", []),
    "fault_threshold": (int, "TPROTECT_FAULT_THRESHOLD", ["fault-threshold"]),
    "scan_threshold": (int, "TPROTECT_SCAN_THRESHOLD", ["scan-threshold"]),
    "cmd_whitelist": (_parse_list, "TPROTECT_CMD_WHITELIST", ["cmd-whitelist"]),
    "unfreeze_pop_ratio": (int, "TPROTECT_UNFREEZE_POP_RATIO", ["unfreeze-pop-ratio"]),
    "baseline_mode": (str, "TPROTECT_BASELINE_MODE", ["baseline-mode"]),
    "max_sample_failures": (int, "TPROTECT_MAX_SAMPLE_FAILURES", ["max-sample-failures"]),
    "test_mode": (int, "TPROTECT_TEST_MODE", ["test-mode"]),
    "log_process_info_on_freeze": (
        _parse_bool,
        "TPROTECT_LOG_PROCESS_INFO_ON_FREEZE",
        ["log-process-info-on-freeze"],
    ),
    "log_process_info_on_unfreeze": (
        _parse_bool,
        "TPROTECT_LOG_PROCESS_INFO_ON_UNFREEZE",
        ["log-process-info-on-unfreeze"],
    ),
    "mlockall": (_parse_bool, "TPROTECT_MLOCKALL", []),
}

Config = namedtuple("Config", list(CONFIG_SCHEMA))


def load_from_file(path=None):
    """Load configuration from file (auto-detect format by extension)."""
    if path:
        paths = [path]
    else:
        paths = CONFIG_SEARCH_PATHS

    for filepath in paths:
        if not os.path.exists(filepath):
            if path:
                logging.warning(f"Config file {filepath} not found")
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
        except Exception as e:
            logging.warning(f"Failed to load config from {filepath}: {e}")
            continue
    return {}


def _load_yaml(path):
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return data.get("tprotect", data)


def _load_toml(path):
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data.get("tprotect", data)


def _load_json(path):
    with open(path) as f:
        data = json.load(f)
    return data.get("tprotect", data)


def _load_ini(path):
    parser = configparser.ConfigParser()
    parser.read(path)
    if "tprotect" not in parser:
        return {}
    return dict(parser["tprotect"])


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
        "debug_logging": False,
        "diagnostic_logging": False,
        "interval": 3.0,
        "fault_threshold": 5,
        "scan_threshold": None,  # Computed from fault_threshold if not set
        "cmd_whitelist": list(DEFAULT_WHITELIST),
        "unfreeze_pop_ratio": 5,
        "baseline_mode": "shared",
        "max_sample_failures": 0,
        "test_mode": 0,
        "log_process_info_on_freeze": False,
        "log_process_info_on_unfreeze": True,
        "mlockall": True,
    }


def normalize_file_config(file_config):
    """Normalize config keys and values from file config.

    Handles underscore/hyphen differences and type conversions.  Keys
    that aren't part of the schema are dropped with a warning.
    """
    normalized = {}

    # Build reverse mapping from file key aliases to config keys
    file_key_to_config = {}
    for config_key, (_, _, aliases) in CONFIG_SCHEMA.items():
        for alias in aliases:
            file_key_to_config[alias] = config_key

    for key, value in file_config.items():
        norm_key = file_key_to_config.get(key, key.replace("-", "_"))
        if norm_key not in CONFIG_SCHEMA:
            logging.warning(f"Unknown config key {key} ignored")
            continue
        converter = CONFIG_SCHEMA[norm_key][0]
        try:
            normalized[norm_key] = converter(value)
        except (ValueError, TypeError) as e:
            logging.warning(f"Invalid value for config key {key}: {value} - {e}")

    return normalized


def validate_config(cfg):
    """Raise ConfigError if any of the values in the config dict makes no sense."""
    if cfg["interval"] <= 0:
        raise ConfigError(f"interval must be positive, got {cfg['interval']}")
    if cfg["fault_threshold"] < 0:
        raise ConfigError(f"fault_threshold must not be negative, got {cfg['fault_threshold']}")
    if cfg["scan_threshold"] < 0:
        raise ConfigError(f"scan_threshold must not be negative, got {cfg['scan_threshold']}")
    if cfg["unfreeze_pop_ratio"] < 1:
        raise ConfigError(f"unfreeze_pop_ratio must be at least 1, got {cfg['unfreeze_pop_ratio']}")
    if cfg["baseline_mode"] not in BASELINE_MODES:
        raise ConfigError(f"baseline_mode must be one of {', '.join(BASELINE_MODES)}, got {cfg['baseline_mode']}")
    if cfg["max_sample_failures"] < 0:
        raise ConfigError(f"max_sample_failures must not be negative, got {cfg['max_sample_failures']}")
    if cfg["test_mode"] < 0:
        raise ConfigError(f"test_mode must not be negative, got {cfg['test_mode']}")


def load_config(args=None):
    """Merge config from defaults <- file <- env <- CLI.

    Priority order (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults

    Returns an immutable Config record.  Raises ConfigError on invalid
    values.
    """
    if args is None:
        args = argparse.Namespace()

    # 1. Defaults
    final = get_defaults()

    # 2. Config file
    file_config = load_from_file(getattr(args, "config", None))
    if file_config:
        final.update(normalize_file_config(file_config))

    # 3. Environment variables
    final.update(load_from_env())

    # 4. CLI arguments (non-None values only)
    for config_key in CONFIG_SCHEMA:
        value = getattr(args, config_key, None)
        if value is not None:
            final[config_key] = value

    # Compute derived values
    if final.get("scan_threshold") is None:
        final["scan_threshold"] = final["fault_threshold"] * 5
    final["cmd_whitelist"] = frozenset(final["cmd_whitelist"])

    validate_config(final)
    return Config(**final)


def create_argument_parser():
    """Create argument parser with all configuration options."""
    p = argparse.ArgumentParser(
        prog="tprotect",
        description="Protect a Linux host from thrashing by temporarily suspending the process causing most major page faults",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration priority (highest to lowest):
  1. Command-line arguments
  2. Environment variables (TPROTECT_*)
  3. Config file (--config or auto-detected)
  4. Built-in defaults

Config file search order (first found is used):
  /etc/tprotect.yaml
  /etc/tprotect.yml
  /etc/tprotect.toml
  /etc/tprotect.json
  /etc/tprotect.conf

Example usage:
  tprotect
  tprotect --interval=1.0 --debug
  tprotect --config=/path/to/config.yaml
""",
    )

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    p.add_argument(
        "--config",
        "-c",
        metavar="PATH",
        help="Configuration file path (auto-detects format by extension)",
    )

    # Logging options
    p.add_argument(
        "--debug",
        dest="debug_logging",
        action="store_true",
        default=None,
        help="Enable debug logging to stderr",
    )
    p.add_argument(
        "--diagnostic",
        dest="diagnostic_logging",
        action="store_true",
        default=None,
        help="Log every process selection decision",
    )
    p.add_argument(
        "--log-process-info-on-freeze",
        dest="log_process_info_on_freeze",
        action="store_true",
        default=None,
        help="Log uid, memory usage and command line when freezing",
    )
    p.add_argument(
        "--log-process-info-on-unfreeze",
        dest="log_process_info_on_unfreeze",
        action="store_true",
        default=None,
        help="Log uid, memory usage and command line when unfreezing (default: true)",
    )
    p.add_argument(
        "--no-log-process-info-on-unfreeze",
        dest="log_process_info_on_unfreeze",
        action="store_false",
        help="Disable logging detailed process info when unfreezing",
    )

    # Timing and thresholds
    p.add_argument(
        "--interval",
        type=float,
        metavar="SECONDS",
        help="Sleep interval between samples (default: 3.0)",
    )
    p.add_argument(
        "--fault-threshold",
        dest="fault_threshold",
        type=int,
        metavar="N",
        help="Major page faults per interval that trigger a freeze (default: 5)",
    )
    p.add_argument(
        "--scan-threshold",
        dest="scan_threshold",
        type=int,
        metavar="N",
        help="Major page faults between refresh scans in independent baseline mode (default: fault_threshold * 5)",
    )
    p.add_argument(
        "--baseline-mode",
        dest="baseline_mode",
        choices=BASELINE_MODES,
        default=None,
        help="shared: the process scan only runs when freezing; "
        "independent: the per-process page fault counts are also refreshed every scan-threshold faults "
        "(default: shared)",
    )
    p.add_argument(
        "--max-sample-failures",
        dest="max_sample_failures",
        type=int,
        metavar="N",
        help="Consecutive failures to read /proc/vmstat tolerated before giving up (default: 0)",
    )

    # Process selection
    p.add_argument(
        "--cmd-whitelist",
        dest="cmd_whitelist",
        nargs="+",
        metavar="CMD",
        help="Processes never to suspend (space-separated)",
    )
    p.add_argument(
        "--unfreeze-pop-ratio",
        dest="unfreeze_pop_ratio",
        type=int,
        metavar="N",
        help="Every Nth unfreeze resumes the oldest frozen process, the others the newest (default: 5)",
    )

    # Misc
    p.add_argument(
        "--no-mlockall",
        dest="mlockall",
        action="store_false",
        default=None,
        help="Don't lock own memory with mlockall()",
    )
    p.add_argument(
        "--test-mode",
        dest="test_mode",
        type=int,
        metavar="N",
        help="Pretend thrashing every 2^N iterations (for testing)",
    )

    return p


#########################
## Logging
#########################


def _diagnostic_log(msg):
    """Log diagnostic information at INFO level (only called when --diagnostic is enabled)."""
    logging.info("DIAGNOSTIC: %s" % msg)


# diagnostic_log is set up by setup_logging() based on diagnostic_logging setting.
# When disabled, set to None so `if diagnostic_log:` guards skip string formatting.
diagnostic_log = None


def setup_logging(cfg):
    global diagnostic_log
    logging.basicConfig(format="%(asctime)s %(levelname)s %(message)s")
    if cfg.debug_logging:
        logging.root.setLevel(logging.DEBUG)
    else:
        logging.root.setLevel(logging.INFO)
    diagnostic_log = _diagnostic_log if cfg.diagnostic_logging else None


def describe_process(pid):
    """Return a one-line description of a process for the log, read from /proc."""
    try:
        status = {}
        with open("/proc/%s/status" % pid, "r") as status_file:
            for line in status_file:
                key, _, value = line.partition(":")
                status[key] = value.strip()
        with open("/proc/%s/cmdline" % pid, "rb") as cmdline_file:
            cmdline = cmdline_file.read().replace(b"\0", b" ").decode("utf-8", "ignore").strip()
    except (OSError, ValueError):
        return "No information available, the process has probably exited."
    uid = (status.get("Uid") or "?").split()[0]
    rss = status.get("VmRSS", "-")
    return "u:%6s  RSS:%12s  CMD: %s" % (uid, rss, cmdline or "[%s]" % status.get("Name", "?"))


#########################
## Pressure sampling
#########################

VMSTAT_PATH = "/proc/vmstat"


class PressureSampler:
    """Reads the cumulative system-wide major page fault counter."""

    def __init__(self, path=VMSTAT_PATH, counter="pgmajfault"):
        self.path = path
        self.counter = counter

    def sample(self):
        prefix = self.counter + " "
        try:
            with open(self.path, "r") as vmstat:
                for line in vmstat:
                    if line.startswith(prefix):
                        return int(line[len(prefix) :])
        except (OSError, ValueError) as e:
            raise PressureSourceError(f"could not read {self.counter} from {self.path}: {e}") from e
        raise PressureSourceError(f"unable to find {self.counter} in {self.path}")


#########################
## Process attribution
#########################


class ProcessScanner:
    """
    Selects the process that have had most major page faults since the
    previous scan.  A page fault count is kept for every process ever
    seen.  Note that a process seen for the first time gets its entire
    page fault count attributed to it, and that "major page fault" is
    not equivalent with "swap" - loading program code from disk counts
    as well.
    """

    procstat = namedtuple("procstat", ("cmd", "state", "majflt", "ppid"))

    def __init__(self, cmd_whitelist=(), own_pid=None, proc_root="/proc"):
        self.cmd_whitelist = frozenset(cmd_whitelist)
        self.own_pid = getpid() if own_pid is None else own_pid
        self.proc_root = proc_root
        ## pid reuse is harmless, a lower count just gives a negative delta once
        self.pagefault_by_pid = {}

    def readStat(self, sfn):
        try:
            return self.readStat_(sfn)
        except (OSError, ValueError, IndexError) as e:
            logging.debug("could not read %s: %s" % (sfn, e))
            return None

    def readStat_(self, sfn):
        """
        helper method - reads the stats file and returns a tuple (cmd, state,
        majflt, ppid)
        """
        if isinstance(sfn, int):
            sfn = os.path.join(self.proc_root, str(sfn), "stat")
        with open(sfn, "rb") as stat_file:
            stats = []
            stats_tx = stat_file.read().decode("utf-8", "ignore")
            ## the command name may contain spaces and parentheses
            stats_tx = stats_tx.split("(", 1)
            stats.append(stats_tx[0])
            stats_tx = stats_tx[1].rsplit(")", 1)
            stats.append(stats_tx[0])
            stats.extend(stats_tx[1].split(" ")[1:])
        return self.procstat(stats[1], stats[2], int(stats[11]), int(stats[3]))

    def is_whitelisted(self, cmd):
        ## kernel threads are named like kworker/0:1
        return cmd in self.cmd_whitelist or cmd.split("/", 1)[0] in self.cmd_whitelist

    def scan(self):
        """Returns the pid with the biggest major page fault increase, or 0"""
        max = 0
        worstpid = 0
        for fn in glob.glob(os.path.join(self.proc_root, "*", "stat")):
            try:
                pid = int(fn.split("/")[-2])
            except ValueError:
                continue
            if pid <= 0:
                continue
            stats = self.readStat(fn)
            if not stats:
                continue
            prev = self.pagefault_by_pid.get(pid, 0)
            self.pagefault_by_pid[pid] = stats.majflt
            diff = stats.majflt - prev
            if diff <= max:
                continue
            if self.is_whitelisted(stats.cmd):
                logging.debug("whitelisted process %s %s %s" % (pid, stats.cmd, diff))
                continue
            ## ignore self
            if pid == self.own_pid:
                continue
            logging.debug("pagefault score: %s, cmd: %s, pid: %s" % (diff, stats.cmd, pid))
            max = diff
            worstpid = pid
        logging.debug("pagefault scan completed - selected pid: %s" % worstpid)
        if worstpid and diagnostic_log:
            diagnostic_log(f"ProcessScanner: pid={worstpid}, majflt delta={max}")
        return worstpid


#########################
## Frozen process queue
#########################


class FrozenQueue:
    """The processes suspended by us, oldest first.

    freeze() appends, unfreeze() pops from the tail except every
    pop_ratio'th time when it pops from the head, and drain() resumes
    everything.  The three are serialized by a lock, as drain() is
    called from the shutdown path while the control loop is running.
    """

    def __init__(self, pop_ratio=5, log_info_on_freeze=False, log_info_on_unfreeze=True):
        if pop_ratio < 1:
            raise ConfigError(f"pop_ratio must be at least 1, got {pop_ratio}")
        self.pop_ratio = pop_ratio
        self.log_info_on_freeze = log_info_on_freeze
        self.log_info_on_unfreeze = log_info_on_unfreeze
        self.frozen_pids = []
        self.num_freezes = 0
        self.num_unfreezes = 0
        self.closed = False
        self.lock = threading.Lock()

    def __len__(self):
        with self.lock:
            return len(self.frozen_pids)

    def __contains__(self, pid):
        with self.lock:
            return pid in self.frozen_pids

    def get_frozen_pids(self):
        with self.lock:
            return list(self.frozen_pids)

    def freeze(self, pid):
        """Suspend pid and put it at the tail of the queue.

        Returns True if the process was suspended.
        """
        if pid <= 0 or pid == getpid():
            logging.error("Refusing to freeze pid %s.  This is very bad.  Skipping." % pid)
            return False
        with self.lock:
            if self.closed:
                logging.warning("Shutting down, not freezing pid %s" % pid)
                return False
            if pid in self.frozen_pids:
                logging.debug("pid %s is already frozen" % pid)
                return False
            try:
                kill(pid, signal.SIGSTOP)
            except ProcessLookupError:
                logging.info("pid %s exited before it could be frozen" % pid)
                return False
            except OSError as e:
                logging.warning("failed to send SIGSTOP to pid %s: %s" % (pid, e))
                return False
            self.frozen_pids.append(pid)
            self.num_freezes += 1
            all_frozen = list(self.frozen_pids)
        ## Logging after freezing - as logging itself may be resource- and timeconsuming.
        if self.log_info_on_freeze:
            logging.info("froze pid %5s - %s - frozen list: %s" % (pid, describe_process(pid), all_frozen))
        else:
            logging.info("froze pid %s - frozen list: %s" % (pid, all_frozen))
        return True

    def unfreeze(self):
        """Resume one process.  Returns its pid, or None if nothing is frozen."""
        with self.lock:
            if not self.frozen_pids:
                return None
            ## queue or stack?  Mostly a stack, as the latest frozen process is
            ## the least likely to be innocent, but every pop_ratio'th time a queue
            ## so nothing stays frozen forever.
            if self.num_unfreezes % self.pop_ratio:
                pid = self.frozen_pids.pop()
            else:
                pid = self.frozen_pids.pop(0)
            try:
                kill(pid, signal.SIGCONT)
            except ProcessLookupError:
                logging.info("pid %s has exited while frozen" % pid)
            except OSError as e:
                logging.warning("failed to send SIGCONT to pid %s: %s" % (pid, e))
            self.num_unfreezes += 1
            all_frozen = list(self.frozen_pids)
        if self.log_info_on_unfreeze:
            logging.info("unfroze pid %5s - %s - frozen list: %s" % (pid, describe_process(pid), all_frozen))
        else:
            logging.info("unfroze pid %s - frozen list: %s" % (pid, all_frozen))
        return pid

    def drain(self):
        """Resume every frozen process and refuse further freezes.

        Returns the list of pids that were in the queue.
        """
        with self.lock:
            self.closed = True
            pids, self.frozen_pids = self.frozen_pids, []
            for pid in pids:
                try:
                    kill(pid, signal.SIGCONT)
                except OSError as e:
                    logging.warning("could not unfreeze pid %s: %s" % (pid, e))
                    continue
                logging.info("pid %s unfrozen" % pid)
        return pids


#########################
## Shutdown handling
#########################


class ShutdownHandler:
    """Catches SIGINT and SIGTERM so that the frozen processes can be
    resumed before we exit.

    The signal handler itself only records the signal and sets the
    event; draining the queue happens in drain(), called by the main
    thread once the event is set.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, queue, event=None):
        self.queue = queue
        self.event = event or threading.Event()
        self.signum = None
        self._previous_handlers = {}

    def install(self):
        for signum in self.SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self.handle)

    def uninstall(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}

    def handle(self, signum, frame):
        self.signum = signum
        self.event.set()

    def drain(self):
        reason = signal.Signals(self.signum).name if self.signum else "shutdown"
        logging.info("Got %s, unfreezing frozen processes" % reason)
        pids = self.queue.drain()
        logging.info("%d frozen processes unfrozen" % len(pids))
        return pids


#########################
## Control loop
#########################

FREEZE = "freeze"
UNFREEZE = "unfreeze"


class ThrashGuard:
    """Runtime state of one tprotect controller.

    Owns the sampler, the process scanner with its page fault history
    and the frozen queue.  step() runs one cycle, run() runs cycles
    until a termination signal arrives.
    """

    def __init__(self, config, sampler=None, scanner=None, queue=None):
        self.config = config
        self.sampler = sampler or PressureSampler()
        self.scanner = scanner or ProcessScanner(config.cmd_whitelist)
        self.queue = queue or FrozenQueue(
            config.unfreeze_pop_ratio,
            log_info_on_freeze=config.log_process_info_on_freeze,
            log_info_on_unfreeze=config.log_process_info_on_unfreeze,
        )
        self.stop_event = threading.Event()
        self.shutdown = ShutdownHandler(self.queue, self.stop_event)
        self.last_observed = None
        self.last_scan_baseline = None
        self.sample_failures = 0
        self.error = None

    def start(self):
        """Take the initial sample.  Raises PressureSourceError if that's not possible."""
        self.last_observed = self.sampler.sample()
        self.last_scan_baseline = self.last_observed
        logging.debug("initial pgmajfault count: %s" % self.last_observed)

    def freeze_something(self):
        pid = self.scanner.scan()
        if not pid:
            logging.info("nothing to freeze found")
            return None
        if self.queue.freeze(pid):
            return pid
        return None

    def unfreeze_something(self):
        return self.queue.unfreeze()

    def _test_mode_trigger(self):
        return self.config.test_mode and not random.getrandbits(self.config.test_mode)

    def _rebaseline(self, current, scanned):
        self.last_observed = current
        if self.config.baseline_mode == "shared":
            return
        if current - self.last_scan_baseline > self.config.scan_threshold:
            ## a lot of major page faults since last time, refresh the
            ## per-process counts so the next selection is based on recent activity
            if not scanned:
                self.scanner.scan()
            self.last_scan_baseline = current

    def step(self):
        """Run one cycle.  Returns FREEZE, UNFREEZE or None"""
        if self.last_observed is None:
            self.start()
        try:
            current = self.sampler.sample()
        except PressureSourceError as e:
            self.sample_failures += 1
            if self.sample_failures > self.config.max_sample_failures:
                raise
            logging.warning(
                "%s - skipping this cycle (%d/%d)" % (e, self.sample_failures, self.config.max_sample_failures)
            )
            return None
        self.sample_failures = 0

        delta = current - self.last_observed
        action = None
        if delta > self.config.fault_threshold or self._test_mode_trigger():
            logging.debug("pgmajfault delta %s above threshold %s" % (delta, self.config.fault_threshold))
            self.freeze_something()
            action = FREEZE
        elif delta == 0:
            self.unfreeze_something()
            action = UNFREEZE
        self._rebaseline(current, action == FREEZE)
        return action

    def loop(self):
        """Run cycles until stop_event is set or a cycle fails."""
        try:
            while not self.stop_event.is_set():
                self.step()
                self.stop_event.wait(self.config.interval)
        except Exception as e:
            self.error = e
            logging.critical("control loop stopped: %s" % e, exc_info=not isinstance(e, TProtectError))
        finally:
            self.stop_event.set()

    def run(self):
        """Main tprotect loop.  Returns the exit code."""
        self.start()
        self.shutdown.install()
        try:
            worker = threading.Thread(target=self.loop, name="tprotect-loop", daemon=True)
            worker.start()
            self.stop_event.wait()
        finally:
            self.stop_event.set()
            self.shutdown.drain()
            self.shutdown.uninstall()
        return 1 if self.error else 0


#########################
## Entry point
#########################

MCL_CURRENT = 1
MCL_FUTURE = 2


def lock_memory():
    """A best-effort attempt on running mlockall(), so we don't get swapped out ourselves."""
    try:
        import ctypes

        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        if libc.mlockall(ctypes.c_int(MCL_CURRENT | MCL_FUTURE)):
            errno = ctypes.get_errno()
            raise OSError(errno, os.strerror(errno))
    except (OSError, AttributeError) as e:
        logging.warning(
            "failed to do mlockall() - this makes the program vulnerable of being swapped out in an extreme thrashing event (maybe you're not running as root?): %s"
            % e
        )
        return False
    return True


def main(argv=None):
    """Main entry point for tprotect."""
    p = create_argument_parser()
    args = p.parse_args(argv)

    try:
        cfg = load_config(args)
    except ConfigError as e:
        p.error(str(e))

    setup_logging(cfg)
    logging.info("tprotect v%s start" % __version__)

    if cfg.mlockall:
        lock_memory()

    guard = ThrashGuard(cfg)
    try:
        return guard.run()
    except PressureSourceError as e:
        logging.critical("%s - refusing to run without the page fault counter" % e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
