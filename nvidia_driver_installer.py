#!/usr/bin/env python3
"""
NVIDIA Driver + Container Toolkit Installer for Debian
======================================================

Installs, upgrades, rebuilds and removes the proprietary NVIDIA driver
(DKMS-enabled .run installer) and the NVIDIA Container Toolkit on Debian 13
(trixie) hosts running Docker GPU workloads.

## WHAT IT DOES:

1. --install runs whichever installation stage the host needs:
   - nouveau loaded: blacklist it, regenerate the initramfs, ask for a reboot.
     Nothing else happens until the host has rebooted without nouveau.
   - nouveau gone: install prerequisites, resolve the latest production
     branch version, and install it (uninstalling a different version first).
   Running --install twice is safe: the second run reports the driver as
   already installed.

2. --rebuild rebuilds the DKMS module for the running kernel after a kernel
   upgrade. Stale nvidia/<version> DKMS entries are removed first.

3. --status prints DKMS, driver, toolkit and Docker GPU health.

4. --version prints the installed and the latest stable driver versions.

5. --uninstall [VERSION] removes the toolkit, the driver, the modprobe
   fragments and the nvidia runtime from /etc/docker/daemon.json. Every step
   is best-effort so a failure in one step never prevents the rest.

## DOCKER DURING UPGRADES:

Replacing a loaded driver requires stopping GPU containers. Docker is stopped
and MASKED so socket activation cannot restart it mid-upgrade, and it is
always unmasked again, on success, failure or Ctrl+C.

References:
- Driver downloads: https://www.nvidia.com/en-us/drivers/unix/
- Installer flags: https://download.nvidia.com/XFree86/Linux-x86_64/latest.txt
- Container Toolkit: https://docs.nvidia.com/datacenter/cloud-native/container-toolkit/latest/install-guide.html
- Debian NVIDIA: https://wiki.debian.org/NvidiaGraphicsDrivers

## REQUIREMENTS:
- Root privileges (sudo)
- Python 3.8+
- pip install nvidia-ml-py docker requests

License: MIT
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import docker
import pynvml
import requests

# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG = {
    # Paths
    'log_file': '/var/log/nvidia-driver-installer.log',
    'scratch_dir': '/tmp',
    'os_release': '/etc/os-release',
    'apt_sources_list': '/etc/apt/sources.list',
    'apt_sources_dir': '/etc/apt/sources.list.d',
    'firmware_source_file': '/etc/apt/sources.list.d/non-free-firmware.list',
    'toolkit_source_file': '/etc/apt/sources.list.d/nvidia-container-toolkit.list',
    'toolkit_keyring': '/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg',
    'blacklist_file': '/etc/modprobe.d/blacklist-nouveau.conf',
    'modeset_file': '/etc/modprobe.d/nvidia.conf',
    'daemon_config': '/etc/docker/daemon.json',
    'vendor_uninstaller': '/usr/bin/nvidia-uninstall',
    'dkms_make_log': '/var/lib/dkms/nvidia/{version}/build/make.log',

    # Remote endpoints
    'driver_page_url': 'https://www.nvidia.com/en-us/drivers/unix/',
    'driver_download_url': 'https://us.download.nvidia.com/XFree86/Linux-x86_64/{version}/{filename}',
    'driver_filename': 'NVIDIA-Linux-x86_64-{version}.run',
    'toolkit_gpgkey_url': 'https://nvidia.github.io/libnvidia-container/gpgkey',
    'toolkit_list_url': 'https://nvidia.github.io/libnvidia-container/stable/deb/nvidia-container-toolkit.list',

    # Labels on the driver page, keyed by branch
    'branch_labels': {
        'production': 'Latest Production Branch Version',
        'new_feature': 'Latest New Feature Branch Version',
        'beta': 'Latest Beta Version',
    },

    # Used when the driver page cannot be read
    'default_driver_version': '570.181',

    # Packages
    'base_packages': ['ca-certificates', 'curl', 'gpg', 'jq', 'dkms'],
    'build_packages': ['build-essential', 'pkg-config', 'libglvnd-dev', 'firmware-misc-nonfree'],
    'toolkit_package': 'nvidia-container-toolkit',
    'firmware_component': 'non-free-firmware',
    'debian_mirror': 'http://deb.debian.org/debian',

    # Kernel modules
    'conflicting_module': 'nouveau',
    'dkms_module': 'nvidia',

    # .run installer flags (unattended, DKMS, leave nouveau handling to us)
    'installer_flags': ['--silent', '--dkms', '--no-x-check', '--no-nouveau-check', '--disable-nouveau'],

    # Docker
    'docker_service': 'docker',
    'docker_runtime_name': 'nvidia',
    'display_manager_service': 'display-manager.service',
    'cuda_test_image': 'nvidia/cuda:12.8.1-base-ubuntu24.04',

    # Timeouts (seconds). None waits for as long as the tool needs.
    'http_timeout': None,
    'query_timeout': 30,
    'container_stop_timeout': 60,
}


# ============================================================================
# LOGGING SETUP
# ============================================================================

logger = logging.getLogger('nvidia-installer')


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """Configure logging with both console and file output"""
    log_file = log_file or CONFIG['log_file']

    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', '%H:%M:%S'))
    logger.addHandler(console)

    try:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(file_handler)
    except OSError:
        logger.warning(f"Cannot write to log file {log_file}, continuing without file logging")

    return logger


# ============================================================================
# DATA CLASSES
# ============================================================================

class LifecycleOutcome(Enum):
    """Result of a lifecycle operation; drives reboot prompts and exit codes"""
    ALREADY_SATISFIED = "already_satisfied"
    APPLIED = "applied"
    REQUIRES_REBOOT = "requires_reboot"
    FAILED = "failed"


@dataclass(frozen=True)
class LifecycleResult:
    outcome: LifecycleOutcome
    reason: str = ""

    @classmethod
    def failed(cls, reason: str) -> 'LifecycleResult':
        return cls(LifecycleOutcome.FAILED, reason)


class ModuleState(Enum):
    """State of the conflicting open-source module (nouveau)"""
    CONFLICTING_ACTIVE = "conflicting_active"
    BLACKLISTED_PENDING_REBOOT = "blacklisted_pending_reboot"
    CLEAR = "clear"


class DriverAction(Enum):
    """What install() has to do to reach the target version"""
    KEEP = "keep"
    REPLACE = "replace"
    FRESH_INSTALL = "fresh_install"


@dataclass(frozen=True)
class InstallationState:
    """
    Snapshot of the host, taken fresh at every entry point.
    Never cached: apt, dkms and docker can change it under us.
    """
    conflicting_module_active: bool
    driver_installed: Optional[str]
    toolkit_installed: bool
    docker_available: bool


@dataclass
class ContainerInfo:
    """Represents a running Docker container"""
    id: str
    name: str
    image: str


@dataclass
class StatusReport:
    lines: List[str] = field(default_factory=list)
    failed: bool = False

    def add(self, line: str = "", failed: bool = False):
        self.lines.append(line)
        if failed:
            self.failed = True


def plan_driver_change(installed: Optional[str], target: str) -> DriverAction:
    """
    Version reconciliation. Versions are compared as plain strings: asking for
    an older version than the installed one is treated like any other change.
    """
    if not installed:
        return DriverAction.FRESH_INSTALL
    if installed == target:
        return DriverAction.KEEP
    return DriverAction.REPLACE


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

# Failures a best-effort step may log and skip
STEP_ERRORS = (subprocess.SubprocessError, OSError, requests.RequestException)


def run_command(
    cmd: List[str],
    timeout: Optional[int] = 60,
    check: bool = True,
    capture: bool = True,
    input: Optional[str] = None,
    env: Optional[Dict] = None
) -> subprocess.CompletedProcess:
    """
    Run a command with proper error handling.

    Args:
        cmd: Command and arguments as list
        timeout: Timeout in seconds (None waits forever)
        check: Raise exception on non-zero exit
        capture: Capture stdout/stderr (False streams to the terminal)
        input: Text written to the command's stdin
        env: Environment variables

    Returns:
        CompletedProcess result
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        return subprocess.run(
            cmd,
            timeout=timeout,
            check=check,
            capture_output=capture,
            input=input,
            text=True,
            env=env or os.environ.copy()
        )
    except subprocess.CalledProcessError as e:
        logger.error(f"Command failed: {' '.join(e.cmd)}")
        if e.stdout:
            logger.error(f"stdout: {e.stdout}")
        if e.stderr:
            logger.error(f"stderr: {e.stderr}")
        raise
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {cmd}")
        raise


def run_command_safe(cmd: List[str], **kwargs) -> Tuple[bool, str, str]:
    """
    Run a command without raising exceptions.

    Returns:
        Tuple of (success, stdout, stderr)
    """
    try:
        result = run_command(cmd, check=False, **kwargs)
        return result.returncode == 0, result.stdout or "", result.stderr or ""
    except (subprocess.SubprocessError, OSError) as e:
        return False, "", str(e)


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def check_root() -> bool:
    """Check if running as root"""
    if os.geteuid() != 0:
        print("This script must be run as root. Use: sudo nvidia-driver-installer")
        return False
    return True


def running_kernel() -> str:
    return os.uname().release


def module_loaded(module: str) -> bool:
    """Check lsmod for a module (first column only, header skipped)"""
    success, stdout, _ = run_command_safe(['lsmod'], timeout=10)
    if not success:
        return False
    return any(line.split()[0] == module for line in stdout.splitlines()[1:] if line.strip())


def regenerate_initramfs():
    logger.info("Regenerating initramfs...")
    run_command(['update-initramfs', '-u'], timeout=None, capture=False)


def best_effort(description: str, step: Callable[[], object]) -> bool:
    """Run one cleanup step; log and carry on if it fails"""
    try:
        step()
        return True
    except STEP_ERRORS as e:
        logger.warning(f"{description} failed, continuing: {e}")
        return False


def download_file(url: str, dest: Path, config: Dict = None):
    """Stream an HTTP download to dest, leaving no partial file behind"""
    config = config or CONFIG
    logger.info(f"Downloading {url}")
    partial = dest.with_name(dest.name + '.part')
    try:
        with requests.get(url, stream=True, timeout=config['http_timeout']) as response:
            response.raise_for_status()
            with open(partial, 'wb') as f:
                for chunk in response.iter_content(chunk_size=1 << 20):
                    f.write(chunk)
        os.replace(partial, dest)
    finally:
        if partial.exists():
            partial.unlink()


# ============================================================================
# INTERACTIVE PROMPTS
# ============================================================================

class Prompter:
    """
    Terminal prompts. Unanswered prompts (EOF on stdin, e.g. when piped)
    take the default: "no" for questions, the given default for free text.
    """

    def __init__(self, input_func: Callable[[str], str] = input):
        self._input = input_func

    def _read(self, question: str) -> Optional[str]:
        try:
            return self._input(question).strip()
        except EOFError:
            print()
            return None

    def confirm(self, question: str) -> bool:
        answer = self._read(f"{question} (y/N): ")
        return bool(answer) and answer.lower().startswith('y')

    def ask(self, question: str, default: str = "") -> str:
        answer = self._read(question)
        return answer or default


# ============================================================================
# NVML WRAPPER - LIVE DRIVER QUERIES
# ============================================================================

class NVMLManager:
    """
    Queries the loaded driver through NVML.
    Falls back to nvidia-smi when NVML cannot be initialized.

    Reference: https://pypi.org/project/nvidia-ml-py/
    """

    def _query(self, fn: Callable[[], object]) -> Optional[str]:
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            logger.debug(f"NVML init failed (driver may not be loaded): {e}")
            return None
        try:
            value = fn()
            return value.decode() if isinstance(value, bytes) else str(value)
        except pynvml.NVMLError as e:
            logger.debug(f"NVML query failed: {e}")
            return None
        finally:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError:
                pass

    def _smi_query(self, field_name: str) -> Optional[str]:
        if not command_exists('nvidia-smi'):
            return None
        success, stdout, _ = run_command_safe(
            ['nvidia-smi', f'--query-gpu={field_name}', '--format=csv,noheader'],
            timeout=CONFIG['query_timeout']
        )
        if success and stdout.strip():
            return stdout.strip().split('\n')[0].strip()
        return None

    def get_driver_version(self) -> Optional[str]:
        """Get currently loaded driver version"""
        return self._query(pynvml.nvmlSystemGetDriverVersion) or self._smi_query('driver_version')

    def get_device_name(self) -> Optional[str]:
        """Name of the first GPU"""
        return (self._query(lambda: pynvml.nvmlDeviceGetName(pynvml.nvmlDeviceGetHandleByIndex(0)))
                or self._smi_query('name'))


# ============================================================================
# VERSION PROBE
# ============================================================================

class VersionProbe:
    """Installed driver version and latest published version"""

    def __init__(self, config: Dict = None, nvml: NVMLManager = None):
        self.config = config or CONFIG
        self.nvml = nvml or NVMLManager()

    def registered_versions(self) -> List[str]:
        """
        Versions registered with DKMS, in `dkms status` order.
        Lines look like: nvidia/570.181, 6.12.43+deb13-amd64, x86_64: installed
        """
        success, stdout, _ = run_command_safe(['dkms', 'status'], timeout=self.config['query_timeout'])
        if not success:
            return []
        prefix = self.config['dkms_module'] + '/'
        versions = []
        for line in stdout.splitlines():
            line = line.strip()
            if not line.startswith(prefix):
                continue
            version = line[len(prefix):].split(',')[0].strip()
            if version and version not in versions:
                versions.append(version)
        return versions

    def get_installed_version(self) -> Optional[str]:
        """
        Live driver first, then DKMS registration (module built but not loaded,
        e.g. right after a kernel upgrade). None on a fresh system.
        """
        version = self.nvml.get_driver_version()
        if version:
            return version
        registered = self.registered_versions()
        return registered[0] if registered else None

    def fetch_latest_version(self, branch: str = 'production') -> Optional[str]:
        """
        Scrape the latest version of a branch from NVIDIA's Unix driver page.
        Single attempt: network errors and page changes both return None.
        """
        label = self.config['branch_labels'][branch]
        try:
            response = requests.get(self.config['driver_page_url'], timeout=self.config['http_timeout'])
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Could not fetch driver page: {e}")
            return None

        pattern = re.escape(label) + r':</span>\s*<a href="[^"]*">\s*([0-9]+\.[0-9]+(?:\.[0-9]+)?)'
        match = re.search(pattern, response.text)
        if not match:
            logger.warning(f"'{label}' not found on driver page")
            return None
        return match.group(1)


# ============================================================================
# SERVICE MANAGER
# ============================================================================

class ServiceManager:
    """Manages systemd services"""

    def is_active(self, service: str) -> bool:
        success, _, _ = run_command_safe(['systemctl', 'is-active', '--quiet', service], timeout=10)
        return success

    def unit_exists(self, unit: str) -> bool:
        success, stdout, _ = run_command_safe(
            ['systemctl', 'list-unit-files', '--type=service', '--no-legend'],
            timeout=10
        )
        if not success:
            return False
        return any(line.split()[0] == unit for line in stdout.splitlines() if line.strip())

    def stop(self, service: str) -> bool:
        """Stop a systemd service if it is running"""
        if not self.is_active(service):
            logger.debug(f"Service {service} is not running")
            return True

        logger.info(f"Stopping service: {service}")
        success, _, stderr = run_command_safe(['systemctl', 'stop', service], timeout=120)
        if not success:
            logger.warning(f"Failed to stop {service}: {stderr}")
        return success

    def mask(self, service: str) -> bool:
        logger.info(f"Masking service: {service}")
        success, _, stderr = run_command_safe(['systemctl', 'mask', service], timeout=30)
        if not success:
            logger.warning(f"Failed to mask {service}: {stderr}")
        return success

    def unmask(self, service: str) -> bool:
        logger.info(f"Unmasking service: {service}")
        success, _, stderr = run_command_safe(['systemctl', 'unmask', service], timeout=30)
        if not success:
            logger.warning(f"Failed to unmask {service}: {stderr}")
        return success

    def restart(self, service: str) -> bool:
        logger.info(f"Restarting service: {service}")
        success, _, stderr = run_command_safe(['systemctl', 'restart', service], timeout=120)
        if not success:
            logger.warning(f"Failed to restart {service}: {stderr}")
        return success


# ============================================================================
# DOCKER MANAGER
# ============================================================================

class DockerManager:
    """
    Docker containers and the GPU smoke test.
    Uses the Docker SDK and falls back to the CLI when the SDK cannot connect.

    Reference: https://docker-py.readthedocs.io/en/stable/containers.html
    """

    def __init__(self, config: Dict = None):
        self.config = config or CONFIG
        self._client = None
        self._client_initialized = False

    @property
    def client(self):
        """Docker SDK client, created on first use (None if the daemon is unreachable)"""
        if not self._client_initialized:
            self._client_initialized = True
            try:
                self._client = docker.from_env()
            except docker.errors.DockerException as e:
                logger.debug(f"Docker SDK init failed: {e}")
        return self._client

    def is_installed(self) -> bool:
        return command_exists('docker')

    def is_running(self) -> bool:
        """Check if Docker daemon is running"""
        if not self.is_installed():
            return False
        success, _, _ = run_command_safe(['docker', 'info'], timeout=self.config['query_timeout'])
        return success

    def get_running_containers(self) -> List[ContainerInfo]:
        if self.client:
            try:
                return [
                    ContainerInfo(
                        id=c.short_id,
                        name=c.name,
                        image=c.image.tags[0] if c.image.tags else c.image.short_id
                    )
                    for c in self.client.containers.list()
                ]
            except docker.errors.DockerException as e:
                logger.debug(f"Docker SDK list failed: {e}")

        success, stdout, _ = run_command_safe(
            ['docker', 'ps', '--format', '{{.ID}}\t{{.Names}}\t{{.Image}}'],
            timeout=self.config['query_timeout']
        )
        containers = []
        if success:
            for line in stdout.strip().split('\n'):
                parts = line.split('\t')
                if len(parts) >= 3:
                    containers.append(ContainerInfo(id=parts[0][:12], name=parts[1], image=parts[2]))
        return containers

    def stop_container(self, container_id: str) -> bool:
        """Stop a container gracefully (SIGTERM, then SIGKILL after the timeout)"""
        timeout = self.config['container_stop_timeout']
        logger.info(f"Stopping container {container_id}...")

        if self.client:
            try:
                self.client.containers.get(container_id).stop(timeout=timeout)
                return True
            except docker.errors.DockerException as e:
                logger.warning(f"Docker SDK stop failed: {e}")

        success, _, stderr = run_command_safe(
            ['docker', 'stop', '-t', str(timeout), container_id],
            timeout=timeout + 30
        )
        if not success:
            logger.error(f"Failed to stop container {container_id}: {stderr}")
        return success

    def stop_all_containers(self) -> int:
        """Stop every running container. Returns how many were stopped."""
        if not self.is_installed():
            return 0
        containers = self.get_running_containers()
        if containers:
            logger.info(f"Stopping {len(containers)} Docker container(s)...")
        return sum(1 for c in containers if self.stop_container(c.id))

    def run_gpu_workload(self, command: List[str]) -> Optional[str]:
        """
        Run a throwaway container with all GPUs attached.
        Returns its output, or None if the workload could not run.
        """
        image = self.config['cuda_test_image']
        if self.client:
            try:
                output = self.client.containers.run(
                    image,
                    command,
                    remove=True,
                    device_requests=[docker.types.DeviceRequest(count=-1, capabilities=[['gpu']])],
                )
                return output.decode(errors='replace').strip()
            except docker.errors.DockerException as e:
                logger.debug(f"GPU workload failed via SDK: {e}")
                return None

        success, stdout, stderr = run_command_safe(
            ['docker', 'run', '--rm', '--gpus', 'all', image] + command,
            timeout=None
        )
        if not success:
            logger.debug(f"GPU workload failed via CLI: {stderr}")
            return None
        return stdout.strip()


# ============================================================================
# PREREQUISITES
# ============================================================================

class PrerequisiteManager:
    """Base tooling, the non-free-firmware apt component and kernel headers"""

    def __init__(self, config: Dict = None, prompter: Prompter = None):
        self.config = config or CONFIG
        self.prompter = prompter or Prompter()

    def apt_update(self):
        run_command(['apt', 'update', '-y'], timeout=None, capture=False)

    def apt_install(self, packages: List[str], recommends: bool = False):
        cmd = ['apt', 'install', '-y']
        if not recommends:
            cmd.append('--no-install-recommends')
        run_command(cmd + packages, timeout=None, capture=False)

    def ensure_base_tools(self):
        """Safe to call repeatedly: apt install is an upsert"""
        self.apt_update()
        self.apt_install(self.config['base_packages'])

    def _source_files(self) -> List[Path]:
        files = [Path(self.config['apt_sources_list'])]
        sources_dir = Path(self.config['apt_sources_dir'])
        if sources_dir.is_dir():
            files += sorted(sources_dir.glob('*.list')) + sorted(sources_dir.glob('*.sources'))
        return [f for f in files if f.is_file()]

    def _source_lines(self) -> List[str]:
        lines = []
        for path in self._source_files():
            try:
                lines += path.read_text().splitlines()
            except OSError as e:
                logger.debug(f"Cannot read {path}: {e}")
        return lines

    def has_firmware_source(self) -> bool:
        """One-line `deb ...` entries and deb822 `Components:` fields both count"""
        component = self.config['firmware_component']
        for line in self._source_lines():
            line = line.strip()
            if (line.startswith('deb ') or line.startswith('Components:')) and component in line.split():
                return True
        return False

    def detect_codename(self) -> Optional[str]:
        try:
            text = Path(self.config['os_release']).read_text()
        except OSError:
            return None
        for line in text.splitlines():
            if line.startswith('VERSION_CODENAME='):
                return line.split('=', 1)[1].strip().strip('"') or None
        return None

    def ensure_firmware_source(self) -> bool:
        """
        Make sure apt can see non-free-firmware (needed for firmware-misc-nonfree).
        Returns True if a source was added.
        """
        if self.has_firmware_source():
            logger.debug("non-free-firmware already present in apt sources")
            return False

        logger.warning(f"'{self.config['firmware_component']}' not found in APT sources.")
        codename = self.detect_codename()
        if not codename:
            print(f"Could not detect codename (e.g., trixie) from {self.config['os_release']}.")
            codename = self.prompter.ask("Please enter your Debian codename manually: ")

        if any(re.match(r'^deb .*debian stable main', line) for line in self._source_lines()):
            codename = 'stable'

        source = (f"deb {self.config['debian_mirror']} {codename} main contrib "
                  f"{self.config['firmware_component']}\n")
        target = Path(self.config['firmware_source_file'])
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(source)
        logger.info(f"Added APT source {target}: {source.strip()}")
        self.apt_update()
        return True

    def kernel_headers_available(self, kernel: Optional[str] = None) -> bool:
        kernel = kernel or running_kernel()
        success, _, _ = run_command_safe(['apt-cache', 'show', f'linux-headers-{kernel}'], timeout=60)
        return success

    def install_kernel_headers(self, kernel: Optional[str] = None):
        kernel = kernel or running_kernel()
        self.apt_install([f'linux-headers-{kernel}'], recommends=True)

    def install_build_dependencies(self, kernel: Optional[str] = None):
        kernel = kernel or running_kernel()
        self.apt_install([f'linux-headers-{kernel}'] + self.config['build_packages'])


# ============================================================================
# DAEMON CONFIGURATION (/etc/docker/daemon.json)
# ============================================================================

def strip_runtime(document: Dict, runtime: str) -> Dict:
    """
    Remove a runtime registration from a daemon.json document.

    runtimes[runtime] is deleted, `runtimes` is dropped once empty, and
    `default-runtime` is deleted only when it names the same runtime.
    Every other key keeps its value and position.
    """
    result = dict(document)
    runtimes = result.get('runtimes')
    if isinstance(runtimes, dict) and runtime in runtimes:
        runtimes = {k: v for k, v in runtimes.items() if k != runtime}
        if runtimes:
            result['runtimes'] = runtimes
        else:
            del result['runtimes']
    if result.get('default-runtime') == runtime:
        del result['default-runtime']
    return result


class DaemonConfig:
    """Read-modify-write of the Docker daemon configuration document"""

    def __init__(self, path: str):
        self.path = Path(path)

    def remove_runtime(self, runtime: str) -> bool:
        """
        Returns True if the file was rewritten. A file that is not a valid
        JSON object is never modified.
        """
        if not self.path.is_file():
            logger.debug(f"{self.path} does not exist, nothing to revert")
            return False

        try:
            document = json.loads(self.path.read_text())
        except ValueError:
            logger.warning(f"{self.path} is not valid JSON; not modifying.")
            return False
        if not isinstance(document, dict):
            logger.warning(f"{self.path} is not a JSON object; not modifying.")
            return False

        updated = strip_runtime(document, runtime)
        if updated == document:
            logger.debug(f"No '{runtime}' runtime registered in {self.path}")
            return False

        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix='.daemon.json.')
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(updated, f, indent=2)
                f.write('\n')
            os.chmod(tmp, self.path.stat().st_mode & 0o777)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info(f"Removed '{runtime}' runtime from {self.path}")
        return True


# ============================================================================
# CONTAINER RUNTIME INTEGRATION (NVIDIA Container Toolkit)
# ============================================================================

class ContainerRuntimeIntegration:
    """
    NVIDIA Container Toolkit: apt source, package and Docker runtime registration.

    Reference: https://docs.nvidia.com/datacenter/cloud-native/container-toolkit/latest/install-guide.html
    """

    def __init__(self, config: Dict = None, prereqs: PrerequisiteManager = None):
        self.config = config or CONFIG
        self.prereqs = prereqs or PrerequisiteManager(self.config)

    def is_installed(self) -> bool:
        return command_exists('nvidia-ctk')

    def version(self) -> Optional[str]:
        success, stdout, _ = run_command_safe(['nvidia-ctk', '--version'], timeout=self.config['query_timeout'])
        if not success:
            return None
        for line in stdout.splitlines():
            if 'version' in line:
                return line.strip()
        return None

    def _add_package_source(self):
        keyring = Path(self.config['toolkit_keyring'])
        response = requests.get(self.config['toolkit_gpgkey_url'], timeout=self.config['http_timeout'])
        response.raise_for_status()
        keyring.parent.mkdir(parents=True, exist_ok=True)
        run_command(['gpg', '--batch', '--yes', '--dearmor', '-o', str(keyring)], input=response.text)

        response = requests.get(self.config['toolkit_list_url'], timeout=self.config['http_timeout'])
        response.raise_for_status()
        signed = response.text.replace('deb https://', f'deb [signed-by={keyring}] https://')
        source_file = Path(self.config['toolkit_source_file'])
        source_file.parent.mkdir(parents=True, exist_ok=True)
        source_file.write_text(signed)
        logger.info(f"Added APT source {source_file}")

    def configure(self):
        """Register the nvidia runtime in /etc/docker/daemon.json"""
        logger.info("Configuring Docker for the NVIDIA runtime...")
        run_command(['nvidia-ctk', 'runtime', 'configure', '--runtime=docker'])

    def install(self):
        logger.info("Installing NVIDIA Container Toolkit...")
        self._add_package_source()
        self.prereqs.apt_update()
        self.prereqs.apt_install([self.config['toolkit_package']], recommends=True)
        self.configure()

    def reconcile_daemon_config(self) -> bool:
        return DaemonConfig(self.config['daemon_config']).remove_runtime(self.config['docker_runtime_name'])

    def remove(self):
        """Every step runs even if an earlier one failed"""
        logger.info("Uninstalling NVIDIA Container Toolkit...")
        best_effort("Toolkit purge", lambda: run_command(
            ['apt', 'purge', '-y', self.config['toolkit_package']], timeout=None, capture=False))
        best_effort("Toolkit source removal", lambda: Path(self.config['toolkit_source_file']).unlink(missing_ok=True))
        best_effort("Package index refresh", self.prereqs.apt_update)
        best_effort("daemon.json cleanup", self.reconcile_daemon_config)


# ============================================================================
# KERNEL MODULE LIFECYCLE
# ============================================================================

class ModuleLifecycle:
    """
    nouveau blacklisting and DKMS rebuilds.

    States:
        CONFLICTING_ACTIVE -> (blacklist + initramfs) -> BLACKLISTED_PENDING_REBOOT
        BLACKLISTED_PENDING_REBOOT -> (reboot) -> CLEAR
    Driver installation only continues from CLEAR.
    """

    def __init__(
        self,
        config: Dict = None,
        probe: VersionProbe = None,
        prereqs: PrerequisiteManager = None,
        toolkit: ContainerRuntimeIntegration = None,
        services: ServiceManager = None,
        prompter: Prompter = None
    ):
        self.config = config or CONFIG
        self.prompter = prompter or Prompter()
        self.probe = probe or VersionProbe(self.config)
        self.prereqs = prereqs or PrerequisiteManager(self.config, self.prompter)
        self.toolkit = toolkit or ContainerRuntimeIntegration(self.config, self.prereqs)
        self.services = services or ServiceManager()

    def conflicting_module_loaded(self) -> bool:
        return module_loaded(self.config['conflicting_module'])

    def detect_state(self, loaded: Optional[bool] = None) -> ModuleState:
        """`loaded` comes from an InstallationState snapshot; lsmod is read when it is None"""
        if loaded is None:
            loaded = self.conflicting_module_loaded()
        if not loaded:
            return ModuleState.CLEAR
        if Path(self.config['blacklist_file']).exists():
            return ModuleState.BLACKLISTED_PENDING_REBOOT
        return ModuleState.CONFLICTING_ACTIVE

    def disable_conflicting_module(self, loaded: Optional[bool] = None) -> LifecycleResult:
        """Blacklist nouveau. The caller must stop and ask for a reboot."""
        state = self.detect_state(loaded)
        if state is ModuleState.CONFLICTING_ACTIVE:
            module = self.config['conflicting_module']
            logger.info(f"Blacklisting {module}...")
            path = Path(self.config['blacklist_file'])
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"blacklist {module}\noptions {module} modeset=0\n")
            regenerate_initramfs()
        elif state is ModuleState.BLACKLISTED_PENDING_REBOOT:
            logger.info(f"{self.config['conflicting_module']} is already blacklisted but still loaded")
        else:
            return LifecycleResult(LifecycleOutcome.ALREADY_SATISFIED)
        print("Reboot required before continuing installation.")
        return LifecycleResult(LifecycleOutcome.REQUIRES_REBOOT)

    def _remove_stale_versions(self, keep: str):
        module = self.config['dkms_module']
        print(f"Cleaning stale NVIDIA DKMS versions (keeping {keep})...")
        for version in self.probe.registered_versions():
            if version == keep:
                continue
            print(f"  Removing stale DKMS entry: {module}/{version}")
            best_effort(f"dkms remove {module}/{version}", lambda v=version: run_command(
                ['dkms', 'remove', '-m', module, '-v', v, '--all'], timeout=None))

    def rebuild(self) -> LifecycleResult:
        """Rebuild the DKMS module for the running kernel"""
        version = self.probe.get_installed_version()
        if not version:
            return LifecycleResult.failed("No NVIDIA driver installed.")
        print(f"Detected NVIDIA version: {version}")

        kernel = running_kernel()
        try:
            self.prereqs.ensure_base_tools()
            self.prereqs.install_kernel_headers(kernel)
        except (subprocess.SubprocessError, OSError):
            return LifecycleResult.failed(f"Failed to install linux-headers-{kernel}")

        self._remove_stale_versions(version)

        module = self.config['dkms_module']
        print(f"Rebuilding NVIDIA DKMS modules for kernel {kernel}...")
        success, _, _ = run_command_safe(['dkms', 'autoinstall', '-k', kernel], timeout=None, capture=False)
        if success:
            print("DKMS autoinstall succeeded.")
        else:
            print(f"DKMS autoinstall failed; attempting dkms reinstall for {module}/{version}...")
            success, _, _ = run_command_safe(
                ['dkms', 'reinstall', '-m', module, '-v', version, '-k', kernel],
                timeout=None, capture=False
            )
            if not success:
                make_log = self.config['dkms_make_log'].format(version=version)
                return LifecycleResult.failed(f"dkms reinstall failed. Tip: check {make_log}")
            print("DKMS reinstall succeeded.")

        try:
            regenerate_initramfs()
        except (subprocess.SubprocessError, OSError) as e:
            return LifecycleResult.failed(f"initramfs regeneration failed: {e}")

        if self.toolkit.is_installed():
            print("Reconfiguring NVIDIA Container Toolkit for Docker...")
            try:
                self.toolkit.configure()
            except (subprocess.SubprocessError, OSError) as e:
                return LifecycleResult.failed(f"nvidia-ctk runtime configure failed: {e}")
            if self.prompter.confirm("Do you want to restart Docker now to apply changes?"):
                self.services.restart(self.config['docker_service'])
            else:
                print("Docker not restarted. You may need to restart it manually later.")

        print("Rebuild complete.")
        return LifecycleResult(LifecycleOutcome.APPLIED)


# ============================================================================
# DRIVER LIFECYCLE
# ============================================================================

class DriverLifecycle:
    """
    Install, upgrade and uninstall of the NVIDIA .run driver.

    install() decision table (after nouveau is out of the way):

        installed        | target  | action
        -----------------+---------+----------------------------------------
        == target        | any     | KEEP: nothing to do
        != target        | any     | REPLACE: stop docker, vendor uninstall,
                         |         |          then fresh install
        none             | any     | FRESH_INSTALL
    """

    def __init__(
        self,
        config: Dict = None,
        prompter: Prompter = None,
        probe: VersionProbe = None,
        prereqs: PrerequisiteManager = None,
        modules: ModuleLifecycle = None,
        toolkit: ContainerRuntimeIntegration = None,
        services: ServiceManager = None,
        docker_manager: DockerManager = None
    ):
        self.config = config or CONFIG
        self.prompter = prompter or Prompter()
        self.probe = probe or VersionProbe(self.config)
        self.prereqs = prereqs or PrerequisiteManager(self.config, self.prompter)
        self.toolkit = toolkit or ContainerRuntimeIntegration(self.config, self.prereqs)
        self.services = services or ServiceManager()
        self.docker = docker_manager or DockerManager(self.config)
        self.modules = modules or ModuleLifecycle(
            self.config, self.probe, self.prereqs, self.toolkit, self.services, self.prompter)

    # -- helpers -------------------------------------------------------------

    def snapshot(self) -> InstallationState:
        return InstallationState(
            conflicting_module_active=self.modules.conflicting_module_loaded(),
            driver_installed=self.probe.get_installed_version(),
            toolkit_installed=self.toolkit.is_installed(),
            docker_available=self.docker.is_installed(),
        )

    def installer_path(self, version: str) -> Path:
        return Path(self.config['scratch_dir']) / self.config['driver_filename'].format(version=version)

    def fetch_installer(self, version: str) -> Path:
        """Download the .run installer unless it is already cached"""
        path = self.installer_path(version)
        if not path.exists():
            url = self.config['driver_download_url'].format(version=version, filename=path.name)
            download_file(url, path, self.config)
        path.chmod(0o755)
        return path

    def resolve_target_version(self) -> str:
        version = self.probe.fetch_latest_version()
        if version:
            return version
        default = self.config['default_driver_version']
        return self.prompter.ask(
            f"Failed to fetch latest version. Enter driver version (default: {default}): ",
            default=default
        )

    def stop_docker(self):
        """Stop workloads and keep Docker down until unmask_docker()"""
        service = self.config['docker_service']
        self.docker.stop_all_containers()
        self.services.stop(service)
        self.services.mask(service)

    def unmask_docker(self):
        self.services.unmask(self.config['docker_service'])

    def run_vendor_uninstaller(self) -> bool:
        tool = Path(self.config['vendor_uninstaller'])
        if not tool.exists():
            return False
        print("Using existing nvidia-uninstall tool...")
        success, _, _ = run_command_safe([str(tool), '--silent'], timeout=None, capture=False)
        if not success:
            logger.warning("nvidia-uninstall reported an error, continuing")
        return True

    def prompt_reboot(self):
        if self.prompter.confirm("Reboot is required to apply changes. Do you want to reboot now?"):
            run_command(['reboot'], check=False)
        else:
            print("Please reboot manually later to apply changes.")

    # -- install -------------------------------------------------------------

    def install(self) -> LifecycleResult:
        state = self.snapshot()
        logger.debug(f"Host state: {state}")
        if self.modules.detect_state(state.conflicting_module_active) is not ModuleState.CLEAR:
            print("Nouveau driver is active. Running pre-reboot installation steps...")
            result = self.modules.disable_conflicting_module(state.conflicting_module_active)
            self.prompt_reboot()
            return result

        try:
            result = self._install_driver(state)
        finally:
            self.unmask_docker()

        if result.outcome is LifecycleOutcome.APPLIED:
            print("Installation complete.")
            self.prompt_reboot()
        return result

    def _install_driver(self, state: InstallationState) -> LifecycleResult:
        try:
            self.prereqs.ensure_base_tools()
            self.prereqs.ensure_firmware_source()

            kernel = running_kernel()
            if not self.prereqs.kernel_headers_available(kernel):
                return LifecycleResult.failed(f"Kernel headers for {kernel} not found in repository.")
            self.prereqs.install_build_dependencies(kernel)

            target = self.resolve_target_version()
            installed = state.driver_installed
            action = plan_driver_change(installed, target)

            if action is DriverAction.KEEP:
                print(f"Already on NVIDIA driver: {installed}")
                return LifecycleResult(LifecycleOutcome.ALREADY_SATISFIED)

            if action is DriverAction.REPLACE:
                print(f"Different NVIDIA driver version detected: {installed}")
                print("Uninstalling existing version before proceeding...")
                self.stop_docker()
                self.run_vendor_uninstaller()
                remaining = self.probe.get_installed_version()
                if remaining:
                    logger.info(f"Driver {remaining} still registered; the installer will replace it")

            self._fresh_install(target)
        except subprocess.SubprocessError as e:
            return LifecycleResult.failed(f"Installation step failed: {e}")
        except requests.RequestException as e:
            return LifecycleResult.failed(f"Download failed: {e}")
        except OSError as e:
            return LifecycleResult.failed(f"Installation step failed: {e}")

        return LifecycleResult(LifecycleOutcome.APPLIED)

    def _fresh_install(self, version: str):
        display_manager = self.config['display_manager_service']
        if self.services.unit_exists(display_manager):
            self.services.stop(display_manager)

        artifact = self.fetch_installer(version)
        print(f"Installing NVIDIA driver {version}...")
        run_command([str(artifact)] + self.config['installer_flags'], timeout=None, capture=False)
        artifact.unlink(missing_ok=True)

        # nvidia-drm modeset is required for Wayland
        modeset = Path(self.config['modeset_file'])
        modeset.parent.mkdir(parents=True, exist_ok=True)
        modeset.write_text("options nvidia-drm modeset=1\n")
        regenerate_initramfs()

        if self.prompter.confirm("Do you want to install NVIDIA Container Toolkit for Docker GPU support?"):
            try:
                self.toolkit.install()
            except STEP_ERRORS as e:
                logger.warning(f"NVIDIA Container Toolkit installation failed, driver is still installed: {e}")
        else:
            print("Skipping NVIDIA Container Toolkit installation.")

    # -- rebuild -------------------------------------------------------------

    def rebuild(self) -> LifecycleResult:
        result = self.modules.rebuild()
        if result.outcome is LifecycleOutcome.APPLIED:
            print("After reboot, verify with: sudo nvidia-driver-installer --status")
            self.prompt_reboot()
        return result

    # -- uninstall -----------------------------------------------------------

    def uninstall(self, version: Optional[str] = None) -> LifecycleResult:
        """Best-effort: a failing step is logged and the next one still runs"""
        best_effort("Base tools", self.prereqs.ensure_base_tools)

        version = version or self.probe.get_installed_version()
        if not version:
            print("No installed NVIDIA driver detected. Cleaning up toolkit and configurations anyway.")

        self.toolkit.remove()

        if version:
            print(f"Uninstalling NVIDIA driver version {version}...")
            if Path(self.config['vendor_uninstaller']).exists():
                best_effort("Vendor uninstall", self.run_vendor_uninstaller)
            else:
                best_effort("Installer uninstall", lambda: self._uninstall_with_installer(version))

            print("Attempting DKMS removal as fallback...")
            module = self.config['dkms_module']
            best_effort("DKMS removal", lambda: run_command(
                ['dkms', 'remove', '-m', module, '-v', version, '--all'], timeout=None))
            best_effort("Package purge", lambda: run_command(
                ['apt', 'purge', '-y', '~nvidia'], timeout=None, capture=False))
        else:
            print("Skipping driver uninstall as no version detected.")

        for key in ('blacklist_file', 'modeset_file'):
            best_effort(f"Removing {self.config[key]}", lambda k=key: Path(self.config[k]).unlink(missing_ok=True))
        best_effort("initramfs regeneration", regenerate_initramfs)
        best_effort("Package autoremove", lambda: run_command(
            ['apt', 'autoremove', '-y'], timeout=None, capture=False))

        print("Uninstallation complete.")
        self.prompt_reboot()
        return LifecycleResult(LifecycleOutcome.APPLIED)

    def _uninstall_with_installer(self, version: str):
        artifact = self.fetch_installer(version)
        try:
            run_command([str(artifact), '--uninstall', '--silent'], timeout=None, capture=False)
        finally:
            artifact.unlink(missing_ok=True)


# ============================================================================
# STATUS REPORTER
# ============================================================================

class StatusReporter:
    """Health report; each check is independent and never aborts the others"""

    def __init__(
        self,
        config: Dict = None,
        nvml: NVMLManager = None,
        toolkit: ContainerRuntimeIntegration = None,
        docker_manager: DockerManager = None
    ):
        self.config = config or CONFIG
        self.nvml = nvml or NVMLManager()
        self.toolkit = toolkit or ContainerRuntimeIntegration(self.config)
        self.docker = docker_manager or DockerManager(self.config)

    def snapshot(self) -> InstallationState:
        return InstallationState(
            conflicting_module_active=module_loaded(self.config['conflicting_module']),
            driver_installed=self.nvml.get_driver_version(),
            toolkit_installed=self.toolkit.is_installed(),
            docker_available=self.docker.is_installed(),
        )

    def _check_dkms(self, report: StatusReport):
        success, stdout, _ = run_command_safe(['dkms', 'status'], timeout=self.config['query_timeout'])
        prefix = self.config['dkms_module'] + '/'
        entries = [l.strip() for l in stdout.splitlines() if l.strip().startswith(prefix)] if success else []
        if entries:
            for entry in entries:
                report.add(f"DKMS NVIDIA module: {entry}")
        else:
            report.add("No NVIDIA DKMS module found.", failed=True)

    def _check_driver(self, report: StatusReport, state: InstallationState):
        if state.conflicting_module_active:
            report.add("Nouveau driver is loaded; reboot to finish --install.", failed=True)
        if not command_exists('nvidia-smi'):
            report.add("NVIDIA driver not detected.", failed=True)
            return
        report.add(f"GPU: {self.nvml.get_device_name() or 'unknown'}")
        success, stdout, stderr = run_command_safe(['nvidia-smi', '--version'], timeout=self.config['query_timeout'])
        if success:
            report.lines.extend(stdout.strip().splitlines())
        else:
            report.add(f"nvidia-smi failed: {stderr.strip() or stdout.strip()}", failed=True)

    def _check_toolkit(self, report: StatusReport, state: InstallationState):
        version = self.toolkit.version() if state.toolkit_installed else None
        if version:
            report.add(version)
        else:
            report.add("NVIDIA Container Toolkit not found.", failed=True)

    def _check_docker_gpu(self, report: StatusReport, state: InstallationState):
        if not state.docker_available or not self.docker.is_running():
            report.add("Docker not available/running; skipping Docker GPU test.")
            return
        version_output = self.docker.run_gpu_workload(['nvidia-smi', '--version'])
        if version_output is None:
            report.add("Docker GPU test failed.", failed=True)
            return
        gpu_name = self.docker.run_gpu_workload(['nvidia-smi', '--query-gpu=name', '--format=csv,noheader'])
        report.add(f"DOCKER: GPU: {gpu_name.splitlines()[0] if gpu_name else 'unknown'}")
        for line in version_output.splitlines():
            report.add(f"DOCKER: {line}")

    def collect(self) -> StatusReport:
        state = self.snapshot()
        logger.debug(f"Host state: {state}")
        report = StatusReport()
        self._check_dkms(report)
        report.add()
        self._check_driver(report, state)
        report.add()
        self._check_toolkit(report, state)
        self._check_docker_gpu(report, state)
        return report

    def print_report(self) -> StatusReport:
        print("Checking NVIDIA and Docker GPU status...")
        report = self.collect()
        for line in report.lines:
            print(line)
        if report.failed:
            print("Driver installation validation failed.\n")
            print(USAGE)
        return report


# ============================================================================
# MAIN
# ============================================================================

USAGE = """Usage: sudo nvidia-driver-installer [OPTION]
Options:
  --install           Automatically run pre-reboot or post-reboot installation steps as needed
  --rebuild           Rebuild the NVIDIA DKMS module for the current kernel
  --status            Show driver, GPU, and container runtime status
  --version           Show installed and latest available stable NVIDIA driver versions
  --uninstall [VER]   Uninstall the NVIDIA driver and toolkit (optionally specify version)"""


def abort(signum=None, frame=None):
    """Interrupt handler: Docker must never stay masked"""
    print("\nScript interrupted or failed.")
    ServiceManager().unmask(CONFIG['docker_service'])
    sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='nvidia-driver-installer',
        description='NVIDIA driver and Container Toolkit installer for Debian',
        allow_abbrev=False,
        add_help=False,
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument('--install', action='store_true')
    actions.add_argument('--rebuild', action='store_true')
    actions.add_argument('--status', action='store_true')
    actions.add_argument('--version', action='store_true')
    actions.add_argument('--uninstall', nargs='?', const='', default=None, metavar='VER')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose output')
    return parser


def report_result(result: LifecycleResult) -> int:
    if result.outcome is LifecycleOutcome.FAILED:
        logger.error(f"Error: {result.reason}")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args, unknown = build_parser().parse_known_args(argv)
    except SystemExit:
        # Conflicting verbs end up here
        args, unknown = None, []

    setup_logging(verbose=bool(args and args.verbose))

    if not check_root():
        return 1

    if args is None:
        print(USAGE)
        return 0

    if unknown:
        # Anything after the verb (and its version) is ignored
        logger.debug(f"Ignoring extra arguments: {' '.join(unknown)}")

    signal.signal(signal.SIGINT, abort)
    signal.signal(signal.SIGTERM, abort)

    prompter = Prompter()

    if args.status:
        StatusReporter().print_report()
        return 0

    if args.version:
        probe = VersionProbe()
        print(f"installed {probe.get_installed_version() or ''}, latest stable {probe.fetch_latest_version() or ''}")
        return 0

    if args.install:
        return report_result(DriverLifecycle(prompter=prompter).install())

    if args.rebuild:
        return report_result(DriverLifecycle(prompter=prompter).rebuild())

    if args.uninstall is not None:
        return report_result(DriverLifecycle(prompter=prompter).uninstall(args.uninstall or None))

    print(USAGE)
    return 0


if __name__ == '__main__':
    sys.exit(main())
