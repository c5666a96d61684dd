import pytest

from conftest import Reply
from shellpilot.conflicts import ConflictInspector, DEFAULT_RULES, extract_params
from shellpilot.errors import ExecutionError
from shellpilot.models import ExecutionResult

DOCKER_VERSION = "Docker version 24.0.5, build ced0996\n"


@pytest.fixture
def inspector(executor):
    return ConflictInspector(executor)


def _rule(kind):
    return next(rule for rule in DEFAULT_RULES if rule.kind == kind)


class TestDockerInstall:
    def test_installed_docker_is_a_duplicate(self, host, session, inspector):
        host.responder = {"docker --version": Reply.text(out=DOCKER_VERSION)}

        verdict = inspector.check(session, "apt install docker -y")

        assert verdict.is_duplicate
        assert verdict.rule == "docker-install"
        assert verdict.message == "Docker is already installed on this system."
        assert "docker --version" in verdict.suggestions
        assert len(verdict.suggestions) >= 1
        assert host.commands == ["docker --version"]

    def test_missing_docker_is_not_a_duplicate(self, host, session, inspector):
        host.responder = {"docker --version": Reply.text(err="bash: docker: command not found\n", exit=127)}

        verdict = inspector.check(session, "apt install docker -y")

        assert not verdict.is_duplicate
        assert verdict.rule == "docker-install"
        assert verdict.suggestions == []

    def test_first_matching_rule_wins(self, host, session, inspector):
        host.responder = {"docker --version": Reply.text(err="not found", exit=127)}

        verdict = inspector.check(session, "sudo apt-get install -y docker.io")

        # docker-install matched first, so the package probes never ran
        assert verdict.rule == "docker-install"
        assert host.commands == ["docker --version"]


class TestDockerRun:
    def test_running_container_is_a_duplicate(self, host, session, inspector):
        host.responder = {"docker ps --filter name=web --format '{{.Names}}'": Reply.text(out="web\n")}

        verdict = inspector.check(session, "docker run --name web -p 80:80 nginx")

        assert verdict.is_duplicate
        assert verdict.message == 'Container "web" is already running.'
        assert "docker stop web" in verdict.suggestions

    def test_prefix_match_is_not_a_duplicate(self, host, session, inspector):
        host.responder = {"docker ps --filter name=web --format '{{.Names}}'": Reply.text(out="web2\n")}

        verdict = inspector.check(session, "docker run -d --name web nginx")

        assert not verdict.is_duplicate

    def test_unsafe_name_is_never_probed(self, host, session, inspector):
        verdict = inspector.check(session, 'docker run --name "$(reboot)" nginx')

        assert not verdict.is_duplicate
        assert host.commands == []


class TestOtherRules:
    def test_installed_package(self, host, session, inspector):
        host.responder = lambda cmd: Reply.text(out="installed\n") if cmd.startswith("dpkg-query") else None

        verdict = inspector.check(session, "sudo apt-get install -y nginx")

        assert verdict.is_duplicate
        assert verdict.message == 'Package "nginx" is already installed.'
        assert host.commands[0] == (
            "dpkg-query -W -f='${Status}' nginx 2>/dev/null | grep -q 'install ok installed' && echo installed"
        )

    def test_package_absent_runs_every_probe(self, host, session, inspector):
        host.responder = lambda cmd: Reply.text(exit=1)

        verdict = inspector.check(session, "dnf install htop")

        assert not verdict.is_duplicate
        assert len(host.commands) == 4

    def test_git_init_defaults_to_current_directory(self, host, session, inspector):
        host.responder = {"test -d ./.git && echo exists": Reply.text(out="exists\n")}

        verdict = inspector.check(session, "git init")

        assert verdict.is_duplicate
        assert verdict.message == "Git repository is already initialized in .."

    def test_service_state_must_match_exactly(self, host, session, inspector):
        host.responder = {"systemctl is-active nginx": Reply.text(out="inactive\n", exit=3)}

        assert not inspector.check(session, "sudo systemctl start nginx").is_duplicate

        host.responder = {"systemctl is-active nginx": Reply.text(out="active\n")}
        assert inspector.check(session, "sudo systemctl start nginx").is_duplicate

    def test_unrecognised_command_runs_no_probe(self, host, session, inspector):
        verdict = inspector.check(session, "ls -la /var/log")

        assert not verdict.is_duplicate
        assert verdict.rule == ""
        assert host.commands == []


class TestProbeFailure:
    def test_failed_probe_is_not_a_duplicate(self, session):
        class BrokenExecutor:
            def execute(self, session, command, on_chunk=None, command_id=None):
                raise ExecutionError("channel refused")

        verdict = ConflictInspector(BrokenExecutor()).check(session, "apt install docker -y")

        assert not verdict.is_duplicate
        assert verdict.probe_failed is True

    def test_later_probe_can_still_confirm(self, session):
        class FlakyExecutor:
            def __init__(self):
                self.calls = []

            def execute(self, session, command, on_chunk=None, command_id=None):
                self.calls.append(command)
                if command.startswith("dpkg-query"):
                    raise ExecutionError("channel refused")
                return ExecutionResult(output="curl-7.76.1-26.el9\n", exit_code=0, duration_ms=3)

        flaky = FlakyExecutor()
        verdict = ConflictInspector(flaky).check(session, "yum install curl")

        assert verdict.is_duplicate
        assert flaky.calls[1] == "rpm -q curl 2>/dev/null"


class TestExtractParams:
    def test_docker_build_tag(self):
        assert extract_params(_rule("docker-build"), "docker build -t myapp:1.0 .") == {"image": "myapp:1.0"}

    def test_no_match(self):
        assert extract_params(_rule("docker-build"), "docker build .") is None

    def test_service_form(self):
        rules = [r for r in DEFAULT_RULES if r.kind == "service-start"]
        assert extract_params(rules[1], "service redis start") == {"service": "redis"}
