"""
Host status snapshot collected right after a connection is established.

The diagnostic commands assume a Linux-like remote with common userland
tools. Every command is independent: a failure only leaves its own field
empty, and the collector itself never raises.
"""

import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ssh_mcp.config import STATUS_MAX_WORKERS
from ssh_mcp.utils import iso_now

CommandRunner = Callable[[str], str]

NOT_AVAILABLE = "N/A"
LABELED_PAIR = re.compile(r"free:(\S+)\s+total:(\S+)")

STATUS_COMMANDS: Dict[str, str] = {
    "hostname": "hostname",
    "ip_addresses": "ip -o addr show | awk '{print $4}' | grep -v '^127\\.' | cut -d'/' -f1",
    "os_name": "uname -s",
    "os_version": "cat /etc/os-release 2>/dev/null | grep '^PRETTY_NAME=' | cut -d'=' -f2 | tr -d '\"' || uname -o",
    "kernel_version": "uname -r",
    "uptime": "uptime -p 2>/dev/null || uptime | awk -F'up ' '{print $2}' | awk -F',' '{print $1}'",
    "disk_space": "df -h / | tail -1 | awk '{print \"free:\" $4 \" total:\" $2}'",
    "memory": "free -h | grep '^Mem:' | awk '{print \"free:\" $7 \" total:\" $2}'",
    "cpu_name": (
        "sh -c '(lscpu 2>/dev/null | grep \"^Model name:\" | cut -d\":\" -f2 | xargs"
        " || cat /proc/cpuinfo 2>/dev/null | grep \"model name\" | head -1 | cut -d\":\" -f2 | xargs"
        " || echo \"$(nproc 2>/dev/null || echo '\\''?'\\'')-core $(uname -m 2>/dev/null || echo '\\''unknown'\\'') processor\")"
        " || true'"
    ),
    "cpu_usage": "top -bn1 | grep 'Cpu(s)' | sed 's/.*, *\\([0-9.]*\\)%* id.*/\\1/' | awk '{print 100 - $1}'",
    "gpus": (
        "sh -c '(nvidia-smi --query-gpu=name,utilization.gpu --format=csv,noheader,nounits 2>/dev/null"
        " | while IFS=\",\" read -r name usage; do echo \"NVIDIA|${name}|${usage}\"; done"
        " || lspci | grep -iE \"vga|3d|display\" | while read -r line; do"
        " gpu_name=$(echo \"$line\" | cut -d\":\" -f3 | xargs); echo \"OTHER|${gpu_name}|\"; done)"
        " || true'"
    ),
    "gpu_paths": "ls -1 /dev/dri/card* 2>/dev/null | sort -V || echo ''",
    "drives": (
        "df -h | awk 'NR>1 && $1 !~ /^(tmpfs|devtmpfs|overlay|shfs|rootfs)$/"
        " && $6 !~ /^(\\/dev|\\/run|\\/sys|\\/proc|\\/boot|\\/usr|\\/lib)$/"
        " && $6 != \"\" {print $1\"|\"$2\"|\"$3\"|\"$4\"|\"$5\"|\"$6}'"
    ),
    "processes": "ps aux | wc -l",
    "threads": "ps -eLf | wc -l",
    "services_running": (
        "systemctl list-units --type=service --state=running 2>/dev/null | wc -l"
        " || service --status-all 2>/dev/null | grep running | wc -l || echo '0'"
    ),
    "services_installed": (
        "systemctl list-unit-files --type=service 2>/dev/null | wc -l"
        " || ls /etc/init.d/ 2>/dev/null | wc -l || echo '0'"
    ),
}


@dataclass
class Capacity:
    free: str
    total: str


@dataclass
class CpuInfo:
    name: Optional[str] = None
    usage: Optional[str] = None


@dataclass
class GpuInfo:
    name: str
    usage: Optional[str] = None
    path: Optional[str] = None


@dataclass
class DriveInfo:
    device: str
    mount_point: str
    total: str
    used: str
    free: str
    usage_percent: str


@dataclass
class ProcessCounts:
    running: int
    threads: int


@dataclass
class ServiceCounts:
    running: int
    installed: int


@dataclass
class StatusSnapshot:
    reachable: bool
    last_updated: str = field(default_factory=iso_now)
    hostname: Optional[str] = None
    ip_addresses: Optional[List[str]] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    kernel_version: Optional[str] = None
    uptime: Optional[str] = None
    disk_space: Optional[Capacity] = None
    memory: Optional[Capacity] = None
    cpu: Optional[CpuInfo] = None
    gpus: Optional[List[GpuInfo]] = None
    drives: Optional[List[DriveInfo]] = None
    processes: Optional[ProcessCounts] = None
    services: Optional[ServiceCounts] = None

    def to_dict(self) -> Dict[str, Any]:
        return _camel_dict(self)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _camel_dict(obj: Any) -> Any:
    if isinstance(obj, list):
        return [_camel_dict(item) for item in obj]
    if hasattr(obj, "__dataclass_fields__"):
        out = {}
        for name in obj.__dataclass_fields__:
            value = getattr(obj, name)
            if value is None:
                continue
            out[_camel(name)] = _camel_dict(value)
        return out
    return obj


# ========= Parsing =========
def parse_capacity(text: Optional[str]) -> Optional[Capacity]:
    if not text:
        return None
    match = LABELED_PAIR.search(text)
    if not match:
        return None
    return Capacity(free=match.group(1), total=match.group(2))


def parse_percentage(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    value = text.strip().rstrip("%").strip()
    if not value or value == NOT_AVAILABLE:
        return None
    try:
        return f"{float(value):.1f}%"
    except ValueError:
        return None


def parse_count(text: Optional[str]) -> Optional[int]:
    """Line count reported by ``wc -l`` minus the header line, floored at zero."""
    if text is None:
        return None
    tokens = text.split()
    if not tokens:
        return None
    try:
        raw = int(tokens[0])
    except ValueError:
        return None
    return max(0, raw - 1)


def parse_lines(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_ip_addresses(text: Optional[str]) -> Optional[List[str]]:
    addresses = [line for line in parse_lines(text) if "127.0.0.1" not in line]
    return addresses or None


def parse_gpus(text: Optional[str]) -> List[Tuple[int, GpuInfo]]:
    """GPUs paired with the index of the output line they came from."""
    gpus = []
    for index, line in enumerate(parse_lines(text)):
        parts = line.split("|")
        if len(parts) < 2:
            continue
        name = parts[1].strip()
        if not name or name == NOT_AVAILABLE:
            continue
        usage = parse_percentage(parts[2]) if len(parts) > 2 else None
        gpus.append((index, GpuInfo(name=name, usage=usage)))
    return gpus


def pair_gpu_paths(gpus: List[Tuple[int, GpuInfo]], paths: List[str]) -> List[GpuInfo]:
    # Positional pairing: the n-th GPU output line, skipped lines included, is
    # assumed to be /dev/dri/cardN in sorted order.
    paired = []
    for line_index, gpu in gpus:
        if line_index < len(paths):
            gpu.path = paths[line_index]
        paired.append(gpu)
    return paired


def parse_drives(text: Optional[str]) -> Optional[List[DriveInfo]]:
    drives = []
    for line in parse_lines(text):
        parts = [part.strip() for part in line.split("|")]
        if len(parts) < 6:
            continue
        device, total, used, free, usage_percent, mount_point = parts[:6]
        if not device or not mount_point:
            continue
        drives.append(
            DriveInfo(
                device=device,
                mount_point=mount_point,
                total=total,
                used=used,
                free=free,
                usage_percent=usage_percent,
            )
        )
    return drives or None


def _pair_counts(first: Optional[str], second: Optional[str]) -> Optional[Tuple[int, int]]:
    a = parse_count(first)
    b = parse_count(second)
    if a is None or b is None:
        return None
    return a, b


# ========= Collection =========
def run_status_commands(run: CommandRunner, max_workers: int = STATUS_MAX_WORKERS) -> Dict[str, Optional[str]]:
    """Run every status command concurrently; failed commands map to None."""
    results: Dict[str, Optional[str]] = {}
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ssh-status") as pool:
        futures = {name: pool.submit(run, command) for name, command in STATUS_COMMANDS.items()}
        for name, future in futures.items():
            try:
                results[name] = future.result()
            except Exception:
                results[name] = None
    return results


def build_snapshot(results: Dict[str, Optional[str]]) -> StatusSnapshot:
    if not any(value is not None for value in results.values()):
        return StatusSnapshot(reachable=False)

    def text(name: str) -> Optional[str]:
        value = results.get(name)
        return value.strip() if value and value.strip() else None

    snapshot = StatusSnapshot(reachable=True)
    snapshot.hostname = text("hostname")
    snapshot.ip_addresses = parse_ip_addresses(results.get("ip_addresses"))
    snapshot.os_name = text("os_name")
    snapshot.os_version = text("os_version")
    snapshot.kernel_version = text("kernel_version")
    snapshot.uptime = text("uptime")
    snapshot.disk_space = parse_capacity(results.get("disk_space"))
    snapshot.memory = parse_capacity(results.get("memory"))

    cpu_name = text("cpu_name")
    if cpu_name:
        snapshot.cpu = CpuInfo(name=cpu_name, usage=parse_percentage(results.get("cpu_usage")))

    gpus = pair_gpu_paths(parse_gpus(results.get("gpus")), parse_lines(results.get("gpu_paths")))
    snapshot.gpus = gpus or None
    snapshot.drives = parse_drives(results.get("drives"))

    process_counts = _pair_counts(results.get("processes"), results.get("threads"))
    if process_counts:
        snapshot.processes = ProcessCounts(*process_counts)
    service_counts = _pair_counts(results.get("services_running"), results.get("services_installed"))
    if service_counts:
        snapshot.services = ServiceCounts(*service_counts)
    return snapshot


def collect_status(run: CommandRunner, max_workers: int = STATUS_MAX_WORKERS) -> StatusSnapshot:
    try:
        return build_snapshot(run_status_commands(run, max_workers=max_workers))
    except Exception:
        return StatusSnapshot(reachable=False)
