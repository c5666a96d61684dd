"""Duplicate-action detection.

Before a mutating command runs, the first rule that recognises it runs one or
more read-only probes on the target host. If a probe shows the effect already
exists (package present, container running, ...) the verdict is a duplicate and
carries alternative commands for the operator.

Rules are plain data checked in a fixed order; only the first rule that both
matches and extracts its parameters is evaluated.
"""

import re
import shlex
from dataclasses import dataclass
from string import Template
from typing import Dict, List, Optional, Pattern, Tuple

from shellpilot.errors import ProbeFailure, ShellPilotError
from shellpilot.models import ConflictVerdict
from shellpilot.utils import log_error

CHECK_SUCCESS = "success"        # exit 0 and some output
CHECK_CONTAINS = "contains"      # output contains `expect`
CHECK_EQUALS = "equals"          # stripped output == `expect`
CHECK_HAS_LINE = "has_line"      # one output line == `expect`

SAFE_TOKEN = re.compile(r"^[A-Za-z0-9._~/][A-Za-z0-9._:/@+=~-]*$")


@dataclass(frozen=True)
class ConflictRule:
    kind: str
    pattern: Pattern[str]
    probes: Tuple[str, ...]
    check: str
    message: str
    suggestions: Tuple[str, ...]
    expect: str = ""
    defaults: Tuple[Tuple[str, str], ...] = ()


_PACKAGE_PROBES = (
    "dpkg-query -W -f='$${Status}' $package 2>/dev/null | grep -q 'install ok installed' && echo installed",
    "rpm -q $package 2>/dev/null",
    "pacman -Q $package 2>/dev/null",
    "command -v $package",
)

DEFAULT_RULES: Tuple[ConflictRule, ...] = (
    ConflictRule(
        kind="docker-install",
        pattern=re.compile(r"\b(?:apt-get|apt|yum|dnf)\s+install\s+(?:-\S+\s+)*(?:docker|docker\.io|docker-ce)(?=\s|$)"),
        probes=("docker --version",),
        check=CHECK_CONTAINS,
        expect="Docker version",
        message="Docker is already installed on this system.",
        suggestions=(
            "docker --version",
            "sudo systemctl start docker",
            "docker ps",
        ),
    ),
    ConflictRule(
        kind="docker-build",
        pattern=re.compile(r"\bdocker\s+(?:image\s+)?build\b.*?(?:\s-t|\s--tag)(?:\s+|=)(?P<image>\S+)"),
        probes=("docker images -q $image",),
        check=CHECK_SUCCESS,
        message='Docker image "$image" already exists.',
        suggestions=(
            "docker rmi $image",
            "docker build -t $image:v2 .",
            "docker images",
        ),
    ),
    ConflictRule(
        kind="docker-run",
        pattern=re.compile(r"\bdocker\s+(?:container\s+)?run\b.*?\s--name(?:\s+|=)(?P<name>\S+)"),
        probes=("docker ps --filter name=$name --format '{{.Names}}'",),
        check=CHECK_HAS_LINE,
        expect="$name",
        message='Container "$name" is already running.',
        suggestions=(
            "docker stop $name",
            "docker logs $name",
            "docker run --name $name-2 ...",
        ),
    ),
    ConflictRule(
        kind="package-install",
        pattern=re.compile(r"\b(?P<manager>apt-get|apt|yum|dnf)\s+install\s+(?:-\S+\s+)*(?P<package>[^\s-]\S*)"),
        probes=_PACKAGE_PROBES,
        check=CHECK_SUCCESS,
        message='Package "$package" is already installed.',
        suggestions=(
            "$package --version",
            "$manager reinstall $package",
            "$manager upgrade $package",
        ),
    ),
    ConflictRule(
        kind="package-install",
        pattern=re.compile(r"\bpacman\s+-S\w*\s+(?:-\S+\s+)*(?P<package>[^\s-]\S*)"),
        probes=_PACKAGE_PROBES,
        check=CHECK_SUCCESS,
        message='Package "$package" is already installed.',
        suggestions=(
            "$package --version",
            "pacman -S $package",
            "pacman -Syu",
        ),
    ),
    ConflictRule(
        kind="repo-init",
        pattern=re.compile(r"\bgit\s+init\b(?:\s+(?:-\S+\s+)*(?P<path>[^\s;&|-]\S*))?"),
        probes=("test -d $path/.git && echo exists",),
        check=CHECK_EQUALS,
        expect="exists",
        defaults=(("path", "."),),
        message="Git repository is already initialized in $path.",
        suggestions=(
            "git status",
            "git remote -v",
            "rm -rf $path/.git && git init $path",
        ),
    ),
    ConflictRule(
        kind="service-start",
        pattern=re.compile(r"\bsystemctl\s+start\s+(?P<service>[^\s-]\S*)"),
        probes=("systemctl is-active $service",),
        check=CHECK_EQUALS,
        expect="active",
        message='Service "$service" is already running.',
        suggestions=(
            "systemctl status $service",
            "systemctl restart $service",
            "journalctl -u $service",
        ),
    ),
    ConflictRule(
        kind="service-start",
        pattern=re.compile(r"\bservice\s+(?P<service>[^\s-]\S*)\s+start\b"),
        probes=("systemctl is-active $service",),
        check=CHECK_EQUALS,
        expect="active",
        message='Service "$service" is already running.',
        suggestions=(
            "service $service status",
            "service $service restart",
            "journalctl -u $service",
        ),
    ),
)


def _clean_param(value: str) -> Optional[str]:
    value = value.strip().strip("'\"").rstrip(";")
    if not value or not SAFE_TOKEN.match(value):
        return None
    return value


def extract_params(rule: ConflictRule, command: str) -> Optional[Dict[str, str]]:
    match = rule.pattern.search(command)
    if match is None:
        return None
    params = dict(rule.defaults)
    for name, raw in match.groupdict().items():
        if raw is None:
            if name in params:
                continue
            return None
        value = _clean_param(raw)
        if value is None:
            return None
        params[name] = value
    return params


def is_positive(rule: ConflictRule, params: Dict[str, str], exit_code: Optional[int], output: str) -> bool:
    text = (output or "").strip()
    expect = Template(rule.expect).safe_substitute(params)
    if rule.check == CHECK_SUCCESS:
        return exit_code == 0 and bool(text)
    if rule.check == CHECK_CONTAINS:
        return expect in text
    if rule.check == CHECK_EQUALS:
        return text == expect
    if rule.check == CHECK_HAS_LINE:
        return any(line.strip() == expect for line in text.splitlines())
    return False


class ConflictInspector:
    def __init__(self, executor, rules: Tuple[ConflictRule, ...] = DEFAULT_RULES):
        self.executor = executor
        self.rules = rules

    def match(self, command: str) -> Optional[Tuple[ConflictRule, Dict[str, str]]]:
        for rule in self.rules:
            params = extract_params(rule, command)
            if params is not None:
                return rule, params
        return None

    def probe_commands(self, rule: ConflictRule, params: Dict[str, str]) -> List[str]:
        quoted = {name: shlex.quote(value) for name, value in params.items()}
        return [Template(probe).substitute(quoted) for probe in rule.probes]

    def _run_probe(self, session, probe: str):
        try:
            return self.executor.execute(session, probe)
        except ShellPilotError as exc:
            raise ProbeFailure(f"probe failed: {probe}: {exc}") from exc

    def check(self, session, command: str) -> ConflictVerdict:
        found = self.match(command or "")
        if found is None:
            return ConflictVerdict(is_duplicate=False)
        rule, params = found

        probe_failed = False
        for probe in self.probe_commands(rule, params):
            try:
                result = self._run_probe(session, probe)
            except ProbeFailure as exc:
                log_error(str(exc))
                probe_failed = True
                continue
            if is_positive(rule, params, result.exit_code, result.output):
                return ConflictVerdict(
                    is_duplicate=True,
                    message=Template(rule.message).safe_substitute(params),
                    suggestions=[Template(s).safe_substitute(params) for s in rule.suggestions],
                    rule=rule.kind,
                )
        return ConflictVerdict(is_duplicate=False, rule=rule.kind, probe_failed=probe_failed)
