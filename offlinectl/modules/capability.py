"""Host capability detection: container runtime and Python interpreter.

Runtimes are tried in a fixed priority order. A runtime whose command exists
but does not pass its liveness check is skipped.
"""
import logging
import shutil
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .errors import MissingCommand, NoCompatibleVersion, NoRuntimeFound
from .models import ContainerRuntime, EnvironmentCapabilities, InterpreterInfo, Version
from .utils import CommandResult, run_command

logger = logging.getLogger("offline.capability")

Runner = Callable[..., CommandResult]
Which = Callable[[str], Optional[str]]


class RuntimeProbe:
    """Detects one container runtime and builds its command lines.

    The command builders follow the docker CLI; runtimes with another
    syntax override them.
    """

    runtime: ContainerRuntime = ContainerRuntime.NONE
    command: str = ''
    liveness_args: Sequence[str] = ()

    def is_installed(self, which: Which) -> bool:
        return which(self.command) is not None

    def is_alive(self, runner: Runner) -> bool:
        try:
            result = runner([self.command, *self.liveness_args], check=False, timeout=30)
        except Exception as e:
            logger.debug(f"{self.command} liveness check raised: {e}")
            return False
        return result.ok

    def detect(self, runner: Runner, which: Which) -> bool:
        if not self.is_installed(which):
            logger.debug(f"{self.command} not found")
            return False
        if not self.is_alive(runner):
            logger.warning(f"⚠️  {self.command} is installed but not responding, trying other runtimes")
            return False
        return True

    def load(self, archive: str) -> List[str]:
        return [self.command, 'load', '-i', archive]

    def save(self, archive: str, image: str) -> List[str]:
        return [self.command, 'save', '-o', archive, image]

    def inspect_container(self, name: str) -> List[str]:
        return [self.command, 'container', 'inspect', name]

    def inspect_image(self, image: str) -> List[str]:
        return [self.command, 'image', 'inspect', image]

    def pull(self, image: str) -> List[str]:
        return [self.command, 'pull', image]

    def run(self, name: str, image: str, ports: Dict[int, int] = None,
            volumes: Dict[str, str] = None, restart: Optional[str] = None) -> List[str]:
        argv = [self.command, 'run', '-d', '--name', name]
        if restart:
            argv += [f'--restart={restart}']
        for host_port, container_port in (ports or {}).items():
            argv += ['-p', f'{host_port}:{container_port}']
        for source, target in (volumes or {}).items():
            argv += ['-v', f'{source}:{target}']
        return argv + [image]


class DockerProbe(RuntimeProbe):
    runtime = ContainerRuntime.DOCKER
    command = 'docker'
    liveness_args = ('info',)


class ContainerdProbe(RuntimeProbe):
    """containerd through ``ctr``, which has no port publishing or restart policy."""

    runtime = ContainerRuntime.CONTAINERD
    command = 'ctr'
    liveness_args = ('version',)

    @staticmethod
    def _qualify(image: str) -> str:
        # ctr needs fully qualified references
        if '/' not in image.split(':')[0]:
            return f'docker.io/library/{image}'
        return image

    def load(self, archive: str) -> List[str]:
        return ['ctr', 'images', 'import', archive]

    def save(self, archive: str, image: str) -> List[str]:
        return ['ctr', 'images', 'export', archive, self._qualify(image)]

    def inspect_container(self, name: str) -> List[str]:
        return ['ctr', 'containers', 'info', name]

    def inspect_image(self, image: str) -> List[str]:
        return ['ctr', 'images', 'check', f'name=={self._qualify(image)}']

    def pull(self, image: str) -> List[str]:
        return ['ctr', 'images', 'pull', '--plain-http', self._qualify(image)]

    def run(self, name: str, image: str, ports: Dict[int, int] = None,
            volumes: Dict[str, str] = None, restart: Optional[str] = None) -> List[str]:
        # Host networking stands in for port mapping
        argv = ['ctr', 'run', '-d', '--net-host']
        for source, target in (volumes or {}).items():
            argv += ['--mount', f'type=bind,src={source},dst={target},options=rbind:ro']
        return argv + [self._qualify(image), name]


class PodmanProbe(RuntimeProbe):
    runtime = ContainerRuntime.PODMAN
    command = 'podman'
    liveness_args = ('info',)


class NerdctlProbe(RuntimeProbe):
    runtime = ContainerRuntime.NERDCTL
    command = 'nerdctl'
    liveness_args = ('version',)


DEFAULT_RUNTIME_PROBES: List[RuntimeProbe] = [DockerProbe(), ContainerdProbe(), PodmanProbe(), NerdctlProbe()]


class CapabilityProbe:
    """Detects which container runtime and interpreter are usable on this host."""

    def __init__(
        self,
        runtime_probes: Optional[Sequence[RuntimeProbe]] = None,
        interpreter_candidates: Sequence[str] = ("3.13", "3.12", "3.11", "3.10"),
        minimum: str = "3.10",
        maximum: str = "3.13",
        runner: Runner = run_command,
        which: Which = shutil.which,
    ):
        self.runtime_probes = list(runtime_probes if runtime_probes is not None else DEFAULT_RUNTIME_PROBES)
        self.interpreter_candidates = list(interpreter_candidates)
        self.minimum = Version.parse(minimum)
        self.maximum = Version.parse(maximum)
        self._runner = runner
        self._which = which
        self._interpreter: Optional[InterpreterInfo] = None
        self._runtime_probe: Optional[RuntimeProbe] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> 'CapabilityProbe':
        return cls(
            interpreter_candidates=config.interpreter.candidates,
            minimum=config.interpreter.minimum,
            maximum=config.interpreter.maximum,
            **kwargs,
        )

    @property
    def runtime_probe(self) -> Optional[RuntimeProbe]:
        return self._runtime_probe

    def detect_runtime(self) -> ContainerRuntime:
        for probe in self.runtime_probes:
            if probe.detect(self._runner, self._which):
                logger.info(f"Detected container runtime: {probe.runtime.value}")
                self._runtime_probe = probe
                return probe.runtime

        names = ", ".join(p.runtime.value for p in self.runtime_probes)
        logger.error(f"No usable container runtime found ({names})")
        raise NoRuntimeFound(f"No usable container runtime found ({names})")

    def _version_of(self, command: str) -> Optional[Version]:
        try:
            result = self._runner([command, '--version'], check=False, timeout=30)
        except Exception as e:
            logger.debug(f"{command} --version raised: {e}")
            return None
        try:
            return Version.parse(result.stdout or result.stderr)
        except ValueError:
            return None

    def _in_range(self, version: Version) -> bool:
        # Inclusive on major.minor; patch level is ignored
        key = (version.major, version.minor)
        return (self.minimum.major, self.minimum.minor) <= key <= (self.maximum.major, self.maximum.minor)

    def detect_interpreter(self) -> InterpreterInfo:
        if self._interpreter is not None:
            return self._interpreter

        for candidate in self.interpreter_candidates:
            command = f"python{candidate}"
            if self._which(command):
                version = self._version_of(command)
                logger.info(f"Detected Python interpreter: {command} ({version or 'unknown version'})")
                self._interpreter = InterpreterInfo(command=command, version=version)
                return self._interpreter

        if self._which('python3'):
            version = self._version_of('python3')
            if version and self._in_range(version):
                logger.info(f"Detected Python interpreter: python3 ({version})")
                self._interpreter = InterpreterInfo(command='python3', version=version)
                return self._interpreter
            logger.warning(
                f"python3 is {version or 'of unknown version'}, outside the supported "
                f"{self.minimum.short}-{self.maximum.short} range"
            )

        message = f"No Python interpreter in the supported range {self.minimum.short}-{self.maximum.short}"
        logger.error(message)
        raise NoCompatibleVersion(message)

    def require_commands(self, commands: Iterable[str]) -> None:
        for command in commands:
            if not self._which(command):
                logger.error(f"Missing required command: {command}")
                raise MissingCommand(command)

    def detect(self) -> EnvironmentCapabilities:
        """Run both detections once for the current phase."""
        runtime = self.detect_runtime()
        interpreter = self.detect_interpreter()
        return EnvironmentCapabilities(container_runtime=runtime, interpreter=interpreter)
