#!/usr/bin/env python3
"""
sqliterg_harness.py
===================
Black-box harness for the sqliterg HTTP gateway.

The gateway is treated as an opaque executable plus an HTTP endpoint:

    <binary> [--serve-dir <path> | --mem-db <name> | --db <path>] ...

    POST http://localhost:<port>/<tenant>/exec
    Content-Type:  application/json
    Authorization: Basic <base64(user:password)>     <-- optional
    Body:          { "transaction": [ { "query": "SELECT 1" } ] }

Building blocks (leaves first):

    ProcessController   start / terminate the service, one process group each
    ReadinessWaiter     fixed pause, or bounded TCP poll of the port
    call()              one JSON POST, every failure folded into a ProbeResult
    CleanupSweep        terminate, sweep orphans, delete test.db* artefacts
    ScenarioRunner      start -> wait -> check -> cleanup (always)

Nothing here raises on a launch, transport or cleanup failure; only the
scenario checks decide pass/fail.
"""

import base64
import glob
import json
import logging
import os
import signal
import socket
import subprocess
import tempfile
import time
from collections.abc import Mapping

import requests
import urllib3

log = logging.getLogger("sqliterg-harness")

# ---------------------------------------------------------------------------
# Runtime config  (populated by argparse / env-vars in the runner's main())
# ---------------------------------------------------------------------------
CFG = {
    "command":         "../target/debug/sqliterg",
    "host":            "localhost",
    "port":            12321,
    "tenant":          "test",
    "request_timeout": 5.0,
    "readiness":       "delay",     # "delay" | "poll"
    "ready_delay":     1.0,
    "ready_timeout":   5.0,
    "poll_interval":   0.1,
    "start_grace":     0.5,
    "stop_timeout":    3.0,
    "artifacts":       ["test.db*"],
}


def exec_url(port: int | None = None, tenant: str | None = None, host: str | None = None) -> str:
    """Default gateway endpoint, e.g. http://localhost:12321/test/exec"""
    host   = CFG["host"]   if host   is None else host
    port   = CFG["port"]   if port   is None else port
    tenant = CFG["tenant"] if tenant is None else tenant
    return f"http://{host}:{port}/{tenant}/exec"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class HarnessError(Exception):
    """Misconfiguration of the harness itself."""


class LaunchError(HarnessError):
    """The service did not become a long-lived process."""
    def __init__(self, command: str, args: list, returncode: int | None, output: str):
        self.command     = command
        self.launch_args = list(args)
        self.returncode  = returncode
        self.output      = output
        super().__init__(
            f"{os.path.basename(command)} {' '.join(args)} is not running "
            f"(exit code {returncode})"
        )


# ---------------------------------------------------------------------------
# ServiceInstance / ProcessController
# ---------------------------------------------------------------------------
class ServiceInstance:
    """One launched service process, owned by exactly one scenario."""

    def __init__(self, command: str, args, process=None, output_file=None,
                 launch_error: str | None = None):
        self.command      = command
        self.args         = list(args)
        self.process      = process
        self.launch_error = launch_error
        self._output      = output_file
        self.alive        = process is not None

    @property
    def pid(self):
        return self.process.pid if self.process is not None else None

    @property
    def returncode(self):
        return self.process.returncode if self.process is not None else None

    def poll(self) -> bool:
        """Refresh and return the liveness flag."""
        if self.alive and self.process.poll() is not None:
            self.alive = False
        return self.alive

    def output(self) -> str:
        """Everything the service wrote to stdout/stderr so far."""
        if self.launch_error:
            return self.launch_error
        if self._output is None or self._output.closed:
            return ""
        # pread: the child shares this file offset, so never move it
        fd = self._output.fileno()
        return os.pread(fd, os.fstat(fd).st_size, 0).decode("utf-8", errors="replace")

    def close(self):
        if self._output is not None and not self._output.closed:
            self._output.close()

    def __repr__(self):
        state = "alive" if self.alive else "dead"
        return f"<ServiceInstance pid={self.pid} {state} args={self.args!r}>"


class ProcessController:
    """
    Launches the service detached in its own session (its pid is the
    process-group leader) and tears the whole group down on terminate().

    Every instance started here stays in ``registry`` until terminate_all(),
    so a scenario that loses its handle still cannot leak a process.
    """

    def __init__(self, stop_timeout: float | None = None):
        self.stop_timeout = stop_timeout if stop_timeout is not None else CFG["stop_timeout"]
        self.registry: list[ServiceInstance] = []

    def start(self, command: str, args=()) -> ServiceInstance:
        if not command:
            raise HarnessError("No service command configured")
        args = [str(a) for a in args]
        out  = tempfile.TemporaryFile()
        try:
            proc = subprocess.Popen(
                [command, *args],
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            out.close()
            log.warning("[PROC] launch refused: %s %s -> %s", command, " ".join(args), exc)
            return ServiceInstance(command, args, launch_error=str(exc))

        inst = ServiceInstance(command, args, proc, out)
        self.registry.append(inst)
        log.info("[PROC] started pid %d: %s %s", proc.pid,
                 os.path.basename(command), " ".join(args))
        return inst

    def survived(self, instance: ServiceInstance, grace: float | None = None) -> bool:
        """True iff the process is still running after ``grace`` seconds."""
        if instance is None or instance.process is None:
            return False
        grace = CFG["start_grace"] if grace is None else grace
        try:
            instance.process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            pass
        alive = instance.poll()
        if not alive:
            log.info("[PROC] pid %d exited with code %s", instance.pid, instance.returncode)
        return alive

    def ensure_running(self, instance: ServiceInstance, grace: float = 0):
        if not self.survived(instance, grace):
            raise LaunchError(instance.command, instance.args,
                              instance.returncode, instance.output())

    def terminate(self, instance: ServiceInstance | None):
        """SIGTERM the process group, escalate to SIGKILL. Safe to repeat."""
        if instance is None or instance.process is None:
            return
        proc = instance.process
        if proc.poll() is not None:
            instance.alive = False
            return

        # start_new_session=True makes the child its own group leader
        pgid = proc.pid
        try:
            os.killpg(pgid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except OSError:
            proc.terminate()

        try:
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            log.warning("[PROC] pid %d ignored SIGTERM, sending SIGKILL", proc.pid)
            try:
                os.killpg(pgid, signal.SIGKILL)
            except OSError:
                proc.kill()
            try:
                proc.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                log.warning("[PROC] pid %d did not exit after SIGKILL", proc.pid)

        instance.alive = False
        log.info("[PROC] pid %d stopped (code %s)", proc.pid, proc.returncode)

    def terminate_all(self):
        while self.registry:
            inst = self.registry.pop()
            self.terminate(inst)
            inst.close()


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------
def port_is_free(host: str, port: int, timeout: float = 0.5) -> bool:
    """True when nothing accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return False
    except OSError:
        return True


class ReadinessWaiter:
    """
    The gateway binds its socket asynchronously and has no readiness signal.

    strategy="delay"  sleep ``delay`` seconds, then assume it is up
    strategy="poll"   connect to host:port every ``interval`` seconds until
                      it accepts or ``timeout`` runs out
    """

    def __init__(self, strategy: str | None = None, delay: float | None = None,
                 host: str | None = None, port: int | None = None,
                 timeout: float | None = None, interval: float | None = None):
        self.strategy = strategy or CFG["readiness"]
        self.delay    = CFG["ready_delay"]   if delay    is None else delay
        self.host     = CFG["host"]          if host     is None else host
        self.port     = CFG["port"]          if port     is None else port
        self.timeout  = CFG["ready_timeout"] if timeout  is None else timeout
        self.interval = CFG["poll_interval"] if interval is None else interval
        if self.strategy not in ("delay", "poll"):
            raise HarnessError(f"Unknown readiness strategy {self.strategy!r}")

    def pause(self):
        time.sleep(self.delay)

    def poll(self, port: int | None = None) -> bool:
        port     = self.port if port is None else port
        deadline = time.monotonic() + self.timeout
        while True:
            if not port_is_free(self.host, port, timeout=self.interval):
                log.debug("[WAIT] %s:%d accepting", self.host, port)
                return True
            if time.monotonic() >= deadline:
                log.warning("[WAIT] %s:%d not accepting after %.1fs",
                            self.host, port, self.timeout)
                return False
            time.sleep(self.interval)

    def wait(self, port: int | None = None) -> bool:
        if self.strategy == "poll":
            return self.poll(port)
        self.pause()
        return True


# ---------------------------------------------------------------------------
# HTTP probe
# ---------------------------------------------------------------------------
class ProbeResult:
    """Outcome of one call(); success is True iff HTTP 200 came back."""

    def __init__(self, success: bool, status_code: int | None = None,
                 result=None, error_kind: str | None = None):
        self.success     = success
        self.status_code = status_code
        self.result      = result
        self.error_kind  = error_kind

    def to_dict(self) -> dict:
        out = {"success": self.success}
        if self.status_code is not None:
            out["statusCode"] = self.status_code
        out["result"] = self.result
        return out

    def __repr__(self):
        return f"ProbeResult({self.to_dict()!r})"


def basic_auth_header(user: str, password: str) -> str:
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def credential_pair(credentials) -> tuple:
    """(user, password) from a 2-sequence or a {"user", "password"} mapping."""
    if isinstance(credentials, Mapping):
        return credentials["user"], credentials["password"]
    if isinstance(credentials, (str, bytes)) or len(credentials) != 2:
        raise ValueError(f"credentials must be (user, password), got {credentials!r}")
    user, password = credentials
    return user, password



def _error_kind(exc: Exception) -> str:
    if isinstance(exc, requests.exceptions.Timeout):
        return "timeout"
    if isinstance(exc, (requests.exceptions.ChunkedEncodingError,
                        urllib3.exceptions.ProtocolError)):
        return "protocol"
    if isinstance(exc, requests.exceptions.ConnectionError):
        return "connection"
    return "other"


def call(url: str | None = None, request=None, credentials=None,
         timeout: float | None = None) -> ProbeResult:
    """
    POST ``request`` as JSON to the gateway and fold the outcome into a
    ProbeResult.  Never raises:

    * transport failure (refused, timeout, DNS, broken framing)
        -> success=False, status_code=None, result=<error text>
    * completed request
        -> success=(status == 200), status_code, result=<parsed JSON>
    * body that is not JSON
        -> success=False, status_code kept, result=<raw text>
    """
    url     = url or exec_url()
    timeout = CFG["request_timeout"] if timeout is None else timeout

    try:
        payload = json.dumps(request if request is not None else {})
    except (TypeError, ValueError) as exc:
        log.warning("[PROBE] cannot serialise request: %s", exc)
        return ProbeResult(False, result=str(exc), error_kind="encode")

    headers = {"Content-Type": "application/json"}
    if credentials:
        try:
            user, password = credential_pair(credentials)
        except (TypeError, ValueError, KeyError) as exc:
            log.warning("[PROBE] unusable credentials: %s", exc)
            return ProbeResult(False, result=str(exc), error_kind="encode")
        headers["Authorization"] = basic_auth_header(user, password)

    t0 = time.perf_counter()
    try:
        resp = requests.post(url, data=payload, headers=headers, timeout=timeout)
    except (requests.exceptions.RequestException, urllib3.exceptions.HTTPError) as exc:
        ms = round((time.perf_counter() - t0) * 1000)
        log.info("[PROBE] %d ms | %s | transport error: %s", ms, url, str(exc)[:200])
        return ProbeResult(False, result=str(exc), error_kind=_error_kind(exc))

    ms = round((time.perf_counter() - t0) * 1000)
    log.info("[PROBE] %d ms | %s | HTTP %d | %d bytes", ms, url, resp.status_code, len(resp.content))

    try:
        body = resp.json()
    except ValueError:
        log.warning("[PROBE] non-JSON body (HTTP %d): %s", resp.status_code, resp.text[:200])
        return ProbeResult(False, resp.status_code, resp.text, error_kind="decode")

    return ProbeResult(resp.status_code == 200, resp.status_code, body)


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------
def _parent_pid(pid: int) -> int | None:
    try:
        with open(f"/proc/{pid}/stat") as fh:
            stat = fh.read()
    except OSError:
        return None
    # comm may contain spaces and parens; fields resume after the last ')'
    fields = stat.rsplit(")", 1)[-1].split()
    return int(fields[1]) if len(fields) > 1 else None


def _ancestors() -> set:
    """This process and every process above it, up to init."""
    pids = {os.getpid(), os.getppid()}
    pid = os.getppid()
    while pid and pid > 1:
        pid = _parent_pid(pid)
        if pid is None or pid in pids:
            break
        pids.add(pid)
    return pids


def _cmdline(pid: int) -> list | None:
    """argv of ``pid``, or None when /proc does not tell."""
    try:
        with open(f"/proc/{pid}/cmdline", "rb") as fh:
            raw = fh.read()
    except OSError:
        return None
    return [a.decode("utf-8", errors="replace") for a in raw.split(b"\0") if a]


class CleanupSweep:
    """
    Runs after every scenario.  Each step is independent and best-effort:

      1. terminate the scenario's instance, then everything still registered
      2. pgrep for ``process_pattern`` and SIGTERM whatever matches
         (excluding this process and its ancestors)
      3. delete files matching ``artifact_patterns`` in ``workdir``
    """

    def __init__(self, controller: ProcessController, process_pattern: str,
                 artifact_patterns=None, full_command: bool = False, workdir: str = "."):
        self.controller        = controller
        self.process_pattern   = process_pattern
        self.artifact_patterns = list(artifact_patterns if artifact_patterns is not None
                                      else CFG["artifacts"])
        self.full_command      = full_command
        self.workdir           = workdir

    def run(self, instance: ServiceInstance | None = None) -> list:
        errors = []
        steps = (
            ("terminate instance", lambda: self.controller.terminate(instance)),
            ("terminate registry", self.controller.terminate_all),
            ("sweep orphans",      self.sweep_orphans),
            ("remove artefacts",   self.remove_artifacts),
        )
        for name, step in steps:
            try:
                step()
            except Exception as exc:
                log.warning("[CLEAN] %s failed: %s", name, exc)
                errors.append(f"{name}: {exc}")
        if instance is not None:
            instance.close()
        return errors

    def find_orphans(self) -> list:
        if not self.process_pattern:
            return []
        cmd = ["pgrep", "-f", self.process_pattern] if self.full_command \
            else ["pgrep", self.process_pattern]
        r = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
        if r.returncode != 0:
            return []
        own = _ancestors()
        pids = [int(p) for p in r.stdout.split() if p.isdigit() and int(p) not in own]
        if self.full_command:
            # -f also hits wrappers that merely mention the pattern (sh -c '...')
            pids = [p for p in pids if self._runs_pattern(p)]
        return pids

    def _runs_pattern(self, pid: int) -> bool:
        argv = _cmdline(pid)
        if argv is None:
            return True
        return any(os.path.basename(a) == self.process_pattern for a in argv)


    def sweep_orphans(self) -> list:
        try:
            pids = self.find_orphans()
        except FileNotFoundError:
            log.warning("[CLEAN] pgrep not available, orphan sweep skipped")
            return []
        for pid in pids:
            try:
                os.kill(pid, signal.SIGTERM)
                log.info("[CLEAN] SIGTERM orphan pid %d (%s)", pid, self.process_pattern)
            except ProcessLookupError:
                pass
        return pids

    def artifacts(self) -> list:
        found = []
        for pattern in self.artifact_patterns:
            found.extend(glob.glob(os.path.join(self.workdir, pattern)))
        return sorted(set(found))

    def remove_artifacts(self) -> list:
        removed = []
        for path in self.artifacts():
            try:
                os.remove(path)
                removed.append(path)
            except FileNotFoundError:
                pass
        if removed:
            log.info("[CLEAN] removed %s", ", ".join(removed))
        return removed

    def verify(self, host: str | None = None, port: int | None = None) -> list:
        """Leaks left behind after run(): a busy port, leftover files."""
        host  = CFG["host"] if host is None else host
        port  = CFG["port"] if port is None else port
        leaks = []
        if not port_is_free(host, port):
            leaks.append(f"port {port} still accepting connections")
        left = self.artifacts()
        if left:
            leaks.append(f"artefacts left: {', '.join(left)}")
        return leaks


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------
class Scenario:
    """
    A named launch configuration plus a check.

    ``check(ctx)`` returns (passed, detail) or raises AssertionError.
    ``ports`` lists ports the scenario binds instead of the default one: the
    first is the one waited on, all are verified free afterwards.
    """

    def __init__(self, name: str, args, check, wait: bool = True,
                 section: str | None = None, ports=()):
        self.name    = name
        self.args    = list(args)
        self.check   = check
        self.wait    = wait
        self.section = section
        self.ports   = list(ports)


class ScenarioContext:
    """What a check gets to work with."""

    def __init__(self, instance: ServiceInstance, controller: ProcessController,
                 waiter: ReadinessWaiter):
        self.instance   = instance
        self.controller = controller
        self.waiter     = waiter

    def url(self, port: int | None = None, tenant: str | None = None) -> str:
        return exec_url(port=port, tenant=tenant)

    def call(self, request=None, url: str | None = None, credentials=None) -> ProbeResult:
        return call(url, request, credentials)

    def survived(self, grace: float | None = None) -> bool:
        return self.controller.survived(self.instance, grace)

    def ensure_running(self, grace: float = 0):
        self.controller.ensure_running(self.instance, grace)


class ScenarioRunner:
    """start -> wait -> check -> cleanup, one scenario at a time."""

    def __init__(self, controller: ProcessController, waiter: ReadinessWaiter,
                 sweep: CleanupSweep, command: str | None = None, base_args=(),
                 verify: bool = True, on_result=None):
        self.controller = controller
        self.waiter     = waiter
        self.sweep      = sweep
        self.command    = command or CFG["command"]
        self.base_args  = list(base_args)
        self.verify     = verify
        self.on_result  = on_result
        self.results: list[dict] = []

    def run(self, scenario: Scenario) -> dict:
        log.info("[RUN] %s", scenario.name)
        t0       = time.perf_counter()
        instance = None
        output   = ""
        try:
            instance = self.controller.start(self.command, self.base_args + scenario.args)
            if scenario.wait:
                self.waiter.wait(scenario.ports[0] if scenario.ports else None)
            passed, detail = scenario.check(
                ScenarioContext(instance, self.controller, self.waiter))
        except AssertionError as exc:
            passed, detail = False, str(exc) or "assertion failed"
        except Exception as exc:
            passed, detail = False, f"EXCEPTION: {exc}"
        finally:
            if instance is not None:
                try:
                    output = instance.output()
                except (OSError, ValueError) as exc:
                    log.warning("[RUN] %s: service output unavailable: %s", scenario.name, exc)
            errors = self.sweep.run(instance)
            for err in errors:
                log.warning("[RUN] %s: cleanup %s", scenario.name, err)

        if self.verify:
            leaks = self.sweep.verify()
            for port in scenario.ports:
                if not port_is_free(CFG["host"], port):
                    leaks.append(f"port {port} still accepting connections")
            if leaks:
                passed = False
                detail = "; ".join(filter(None, [detail, *leaks]))

        ms     = (time.perf_counter() - t0) * 1000
        record = {"name": scenario.name, "passed": bool(passed), "ms": ms,
                  "detail": detail or "", "output": output}
        self.results.append(record)
        if self.on_result:
            self.on_result(record)
        return record

    def run_all(self, scenarios, repeat: int = 1) -> list:
        rounds = []
        for _ in range(max(1, repeat)):
            rounds.append([self.run(s) for s in scenarios])
        return rounds

    def summary(self) -> dict:
        total  = len(self.results)
        passed = sum(1 for r in self.results if r["passed"])
        return {"total": total, "passed": passed, "failed": total - passed}


def outcomes_by_round(rounds) -> list:
    """[[True, False, ...], ...] per round, for the idempotence comparison."""
    return [[r["passed"] for r in rnd] for rnd in rounds]
