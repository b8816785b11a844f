"""
Shared test fixtures: a recording stand-in for run_command, scripted prompts,
and a CONFIG copy whose paths all live under tmp_path.
"""

import subprocess
from pathlib import Path
from typing import List, Optional

import pytest

import nvidia_driver_installer as installer

KERNEL = "6.12.43+deb13-amd64"


class FakeRunner:
    """Records every command; answers from (prefix, returncode, stdout) rules"""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.rules = []

    def on(self, *prefix, returncode: int = 0, stdout: str = ""):
        self.rules.insert(0, (list(prefix), returncode, stdout))
        return self

    def __call__(self, cmd, timeout=60, check=True, capture=True, input=None, env=None):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        returncode, stdout = 0, ""
        for prefix, rc, out in self.rules:
            if cmd[:len(prefix)] == prefix:
                returncode, stdout = rc, out
                break
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmd, output=stdout, stderr="")
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

    def ran(self, *prefix) -> bool:
        return any(c[:len(prefix)] == list(prefix) for c in self.calls)

    def index(self, *prefix) -> int:
        for i, c in enumerate(self.calls):
            if c[:len(prefix)] == list(prefix):
                return i
        raise AssertionError(f"{' '.join(prefix)} was never run")


class ScriptedPrompter(installer.Prompter):
    """Answers prompts from queues; an empty queue behaves like EOF"""

    def __init__(self, confirms: Optional[List[bool]] = None, answers: Optional[List[str]] = None):
        super().__init__()
        self.confirms = list(confirms or [])
        self.answers = list(answers or [])
        self.questions: List[str] = []

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        return self.confirms.pop(0) if self.confirms else False

    def ask(self, question: str, default: str = "") -> str:
        self.questions.append(question)
        answer = self.answers.pop(0) if self.answers else ""
        return answer or default


class FakeNVML:
    def __init__(self, version: Optional[str] = None, name: Optional[str] = None):
        self.version = version
        self.name = name

    def get_driver_version(self):
        return self.version

    def get_device_name(self):
        return self.name


class FakeDocker:
    def __init__(self, installed: bool = True, running: bool = True, outputs=None):
        self.installed = installed
        self.running = running
        self.outputs = outputs or {}
        self.stop_calls = 0
        self.workloads = []

    def is_installed(self):
        return self.installed

    def is_running(self):
        return self.installed and self.running

    def stop_all_containers(self):
        self.stop_calls += 1
        return 0

    def run_gpu_workload(self, command):
        self.workloads.append(command)
        return self.outputs.get(tuple(command))


class FakeResponse:
    def __init__(self, text: str = "", content: bytes = b"", status: int = 200):
        self.text = text
        self.content = content or text.encode()
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise installer.requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=1):
        yield self.content

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeHTTP:
    """Routes requests.get by URL; unknown URLs raise ConnectionError"""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requested: List[str] = []

    def __call__(self, url, **kwargs):
        self.requested.append(url)
        if url not in self.routes:
            raise installer.requests.ConnectionError(f"unreachable: {url}")
        return self.routes[url]


def driver_page(version: str) -> str:
    return (
        '<p><span class="label">Latest Production Branch Version:</span> '
        f'<a href="/Download/driverResults.aspx/1/en-us/">{version}</a></p>'
        '<p><span class="label">Latest New Feature Branch Version:</span> '
        '<a href="/Download/driverResults.aspx/2/en-us/">580.82.07</a></p>'
    )


@pytest.fixture
def runner(monkeypatch) -> FakeRunner:
    fake = FakeRunner()
    monkeypatch.setattr(installer, "run_command", fake)
    monkeypatch.setattr(installer, "running_kernel", lambda: KERNEL)
    return fake


@pytest.fixture
def http(monkeypatch) -> FakeHTTP:
    fake = FakeHTTP()
    monkeypatch.setattr(installer.requests, "get", fake)
    return fake


@pytest.fixture
def available_commands(monkeypatch) -> set:
    """Names command_exists() reports as installed"""
    names = set()
    monkeypatch.setattr(installer, "command_exists", lambda name: name in names)
    return names


@pytest.fixture
def config(tmp_path: Path) -> dict:
    """CONFIG with every host path redirected into tmp_path"""
    etc = tmp_path / "etc"
    (etc / "apt" / "sources.list.d").mkdir(parents=True)
    (etc / "modprobe.d").mkdir()
    (etc / "docker").mkdir()
    scratch = tmp_path / "scratch"
    scratch.mkdir()

    cfg = dict(installer.CONFIG)
    cfg.update({
        'log_file': str(tmp_path / "installer.log"),
        'scratch_dir': str(scratch),
        'os_release': str(etc / "os-release"),
        'apt_sources_list': str(etc / "apt" / "sources.list"),
        'apt_sources_dir': str(etc / "apt" / "sources.list.d"),
        'firmware_source_file': str(etc / "apt" / "sources.list.d" / "non-free-firmware.list"),
        'toolkit_source_file': str(etc / "apt" / "sources.list.d" / "nvidia-container-toolkit.list"),
        'toolkit_keyring': str(tmp_path / "keyrings" / "nvidia-container-toolkit-keyring.gpg"),
        'blacklist_file': str(etc / "modprobe.d" / "blacklist-nouveau.conf"),
        'modeset_file': str(etc / "modprobe.d" / "nvidia.conf"),
        'daemon_config': str(etc / "docker" / "daemon.json"),
        'vendor_uninstaller': str(tmp_path / "bin" / "nvidia-uninstall"),
    })
    return cfg
