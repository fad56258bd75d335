"""Host preconditions applied to every node before the installer runs.

Every action is guarded by a state check, so re-applying to a converged node
only reports what was skipped.
"""
import logging
from typing import Callable, Iterable, List, Tuple

from .errors import NodeUnreachable
from .models import Node, PreconditionReport

logger = logging.getLogger("offline.remote_state")

FIREWALL_UNITS = ('firewalld', 'ufw')

HOSTS_BEGIN = "# BEGIN offlinectl managed hosts"
HOSTS_END = "# END offlinectl managed hosts"


def reconcile_hosts(existing: str, entries: Iterable[Tuple[str, str]]) -> str:
    """Return /etc/hosts content with the fleet entries in a single managed block.

    Any previous managed block is replaced, and bare ``address name`` lines
    matching a fleet entry (left by earlier appends) are dropped.
    """
    entries = list(entries)
    wanted = {(address, name) for address, name in entries}

    kept: List[str] = []
    in_block = False
    for line in existing.splitlines():
        stripped = line.strip()
        if stripped == HOSTS_BEGIN:
            in_block = True
            continue
        if stripped == HOSTS_END:
            in_block = False
            continue
        if in_block:
            continue
        if tuple(stripped.split()) in wanted:
            continue
        kept.append(line)

    while kept and not kept[-1].strip():
        kept.pop()

    block = [HOSTS_BEGIN] + [f"{address} {name}" for address, name in entries] + [HOSTS_END]
    return "\n".join(kept + block) + "\n"


class RemoteStateApplier:
    """Applies package, firewall, SELinux, swap and hosts preconditions on a node."""

    def __init__(self, config, connect: Callable):
        self.remote_workdir = config.remote_workdir
        self._connect = connect

    def _run(self, conn, command: str, **kwargs) -> Tuple[int, str]:
        rc, stdout, stderr = conn.execute(command, **kwargs)
        if rc != 0:
            logger.debug(f"'{command}' exited {rc}: {stderr.strip()}")
        return rc, stdout

    def apply(self, node: Node, host_entries: Iterable[Tuple[str, str]]) -> PreconditionReport:
        """Converge one node and report what changed.

        Raises:
            NodeUnreachable: If the node cannot be reached at all
        """
        conn = self._connect(node)
        rc, _, stderr = conn.execute('true')
        if rc != 0:
            raise NodeUnreachable(node.id, stderr.strip())

        report = PreconditionReport(node_id=node.id)
        self.install_packages(conn, report)
        self.disable_firewall(conn, report)
        self.relax_selinux(conn, report)
        self.disable_swap(conn, report)
        self.update_hosts(conn, host_entries, report)

        for warning in report.warnings:
            logger.warning(f"⚠️  {node.id}: {warning}")
        logger.info(
            f"✅ {node.id} ({node.address}) preconditions applied: "
            f"{len(report.installed)} changed, {len(report.skipped)} already in place"
        )
        return report

    def _os_family(self, conn) -> str:
        if self._run(conn, 'test -f /etc/redhat-release')[0] == 0:
            return 'rpm'
        if self._run(conn, 'test -f /etc/debian_version')[0] == 0:
            return 'deb'
        return ''

    def install_packages(self, conn, report: PreconditionReport) -> None:
        family = self._os_family(conn)
        if not family:
            report.warnings.append("unknown OS family, skipping system packages")
            return

        package_dir = f"{self.remote_workdir}/os-packages/{family}"
        if self._run(conn, f'ls {package_dir}/*.{family} >/dev/null 2>&1')[0] != 0:
            report.warnings.append(f"no .{family} packages in {package_dir}")
            return

        if family == 'rpm':
            if self._run(conn, 'command -v yum')[0] != 0:
                report.warnings.append("yum not found, skipping system packages")
                return
            if self._run(conn, 'rpm -q epel-release')[0] != 0:
                if self._run(conn, 'yum install -y epel-release')[0] != 0:
                    report.warnings.append("EPEL installation failed, continuing with bundled packages")
            rc, _ = self._run(conn, f'yum install -y {package_dir}/*.rpm')
        else:
            if self._run(conn, 'command -v dpkg')[0] != 0:
                report.warnings.append("dpkg not found, skipping system packages")
                return
            rc, _ = self._run(conn, f'dpkg -i {package_dir}/*.deb')
            if rc != 0:
                # Resolve dependencies dpkg could not order on its own
                rc, _ = self._run(conn, 'apt-get install -f -y')

        if rc == 0:
            report.installed.append(f"{family} packages")
        else:
            report.warnings.append(f"{family} package installation failed")

    def disable_firewall(self, conn, report: PreconditionReport) -> None:
        for unit in FIREWALL_UNITS:
            _, listing = self._run(conn, f'systemctl list-unit-files {unit}.service --no-legend')
            if not listing.strip():
                continue
            if 'masked' in listing:
                report.skipped.append(f"{unit} masked")
                continue
            self._run(conn, f'systemctl stop {unit}')
            self._run(conn, f'systemctl disable {unit}')
            if self._run(conn, f'systemctl mask {unit}')[0] == 0:
                report.installed.append(f"{unit} disabled")
            else:
                report.warnings.append(f"could not mask {unit}")

    def relax_selinux(self, conn, report: PreconditionReport) -> None:
        if self._run(conn, 'test -f /etc/selinux/config')[0] != 0:
            return

        if self._run(conn, "grep -q '^SELINUX=enforcing' /etc/selinux/config")[0] == 0:
            if self._run(conn, "sed -i 's/^SELINUX=enforcing/SELINUX=permissive/' /etc/selinux/config")[0] == 0:
                report.installed.append("SELinux config permissive")
            else:
                report.warnings.append("could not update /etc/selinux/config")
        else:
            report.skipped.append("SELinux config")

        _, mode = self._run(conn, 'getenforce')
        if mode.strip() == 'Enforcing':
            if self._run(conn, 'setenforce 0')[0] == 0:
                report.installed.append("SELinux permissive")
            else:
                report.warnings.append("setenforce 0 failed")

    def disable_swap(self, conn, report: PreconditionReport) -> None:
        _, active = self._run(conn, 'swapon --show --noheadings')
        if active.strip():
            if self._run(conn, 'swapoff -a')[0] == 0:
                report.installed.append("swap off")
            else:
                report.warnings.append("swapoff failed")
        else:
            report.skipped.append("swap off")

        # Only uncommented entries with a swap field
        pattern = r'^[^#].*\sswap\s'
        if self._run(conn, f"grep -Eq '{pattern}' /etc/fstab")[0] == 0:
            if self._run(conn, f"sed -i -E '/{pattern}/s/^/#/' /etc/fstab")[0] == 0:
                report.installed.append("fstab swap commented")
            else:
                report.warnings.append("could not update /etc/fstab")
        else:
            report.skipped.append("fstab swap")

    def update_hosts(self, conn, entries: Iterable[Tuple[str, str]], report: PreconditionReport) -> None:
        rc, current = self._run(conn, 'cat /etc/hosts')
        if rc != 0:
            report.warnings.append("could not read /etc/hosts")
            return

        desired = reconcile_hosts(current, entries)
        if desired == current:
            report.skipped.append("/etc/hosts")
            return

        if self._run(conn, 'cp /etc/hosts /etc/hosts.backup')[0] != 0:
            report.warnings.append("could not back up /etc/hosts, leaving it unchanged")
            return
        if self._run(conn, 'cat > /etc/hosts', input_text=desired)[0] == 0:
            report.installed.append("/etc/hosts")
        else:
            report.warnings.append("could not write /etc/hosts")
