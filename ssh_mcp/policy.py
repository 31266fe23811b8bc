import re
from dataclasses import dataclass
from typing import Iterable, Optional, Pattern, Tuple

from ssh_mcp.config import ConnectionDescriptor
from ssh_mcp.errors import ConfigurationError

NOT_IN_ALLOW_LIST = "not in allow-list"
MATCHES_DENY_LIST = "matches deny-list"


@dataclass(frozen=True)
class PolicyVerdict:
    allowed: bool
    reason: Optional[str] = None


def _compile_all(patterns: Iterable[str], kind: str, name: str) -> Tuple[Pattern, ...]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise ConfigurationError(f"connection [{name}] has invalid {kind} pattern {pattern!r}: {exc}")
    return tuple(compiled)


class CommandPolicy:
    """Allow-list then deny-list check for one connection.

    Patterns are regular expressions matched with ``search``: they are
    unanchored unless the pattern itself uses ``^`` or ``$``.
    """

    def __init__(self, allow: Tuple[Pattern, ...] = (), deny: Tuple[Pattern, ...] = ()):
        self.allow = allow
        self.deny = deny

    @classmethod
    def from_descriptor(cls, descriptor: ConnectionDescriptor) -> "CommandPolicy":
        return cls(
            allow=_compile_all(descriptor.command_whitelist, "allow-list", descriptor.name),
            deny=_compile_all(descriptor.command_blacklist, "deny-list", descriptor.name),
        )

    @property
    def has_allow_list(self) -> bool:
        return bool(self.allow)

    def evaluate(self, command: str) -> PolicyVerdict:
        if self.allow and not any(pattern.search(command) for pattern in self.allow):
            return PolicyVerdict(False, NOT_IN_ALLOW_LIST)
        if self.deny and any(pattern.search(command) for pattern in self.deny):
            return PolicyVerdict(False, MATCHES_DENY_LIST)
        return PolicyVerdict(True)


def evaluate(command: str, descriptor: ConnectionDescriptor) -> PolicyVerdict:
    return CommandPolicy.from_descriptor(descriptor).evaluate(command)
