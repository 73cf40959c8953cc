import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Pattern

from thop.errors import CommandRestrictedError


class Category(Enum):
    PRIVILEGE_ESCALATION = "privilege-escalation"
    DESTRUCTIVE_FILE = "destructive-file"
    SYSTEM_MODIFICATION = "system-modification"

    @property
    def description(self) -> str:
        return _CATEGORY_DESCRIPTIONS[self]


_CATEGORY_DESCRIPTIONS = {
    Category.PRIVILEGE_ESCALATION: "Privilege escalation",
    Category.DESTRUCTIVE_FILE: "Destructive file operation",
    Category.SYSTEM_MODIFICATION: "System modification",
}

# Start of string or after a pipe, semicolon or &/&&.
COMMAND_PREFIX = r"(?:^|[|;&])\s*"

PRIVILEGE_COMMANDS = ("sudo", "su", "doas", "pkexec")
DESTRUCTIVE_COMMANDS = ("rm", "rmdir", "shred", "wipe", "srm", "unlink", "dd")
SYSTEM_COMMANDS = (
    "chmod", "chown", "chgrp", "chattr",
    "fdisk", "parted", "mount", "umount", "fsck",
    "shutdown", "reboot", "poweroff", "halt", "init",
    "useradd", "userdel", "usermod", "groupadd", "groupdel", "groupmod", "passwd",
    "systemctl", "service",
    "insmod", "rmmod", "modprobe",
    "setenforce", "aa-enforce", "aa-complain",
)


@dataclass(frozen=True)
class Rule:
    pattern: Pattern[str]
    category: Category
    command: str

    @classmethod
    def for_command(cls, command: str, category: Category) -> "Rule":
        return cls(re.compile(COMMAND_PREFIX + re.escape(command) + r"\s"), category, command)

    def matches(self, command: str) -> bool:
        return self.pattern.search(command) is not None


@dataclass(frozen=True)
class CheckResult:
    allowed: bool
    rule: Optional[Rule] = None

    @property
    def command(self) -> Optional[str]:
        return self.rule.command if self.rule else None

    @property
    def category(self) -> Optional[Category]:
        return self.rule.category if self.rule else None


def default_rules() -> List[Rule]:
    rules = [Rule.for_command(cmd, Category.PRIVILEGE_ESCALATION) for cmd in PRIVILEGE_COMMANDS]

    rules.extend(Rule.for_command(cmd, Category.DESTRUCTIVE_FILE) for cmd in DESTRUCTIVE_COMMANDS)
    rules.append(Rule(re.compile(COMMAND_PREFIX + r"truncate\s+.*-s\s*0"), Category.DESTRUCTIVE_FILE, "truncate"))
    rules.append(Rule(re.compile(COMMAND_PREFIX + r">\s*\S"), Category.DESTRUCTIVE_FILE, "> redirect"))

    rules.extend(Rule.for_command(cmd, Category.SYSTEM_MODIFICATION) for cmd in SYSTEM_COMMANDS)
    rules.append(Rule(re.compile(COMMAND_PREFIX + r"mkfs(?:\.\w+)?\s"), Category.SYSTEM_MODIFICATION, "mkfs"))
    return rules


class Checker:
    def __init__(self, enabled: bool = False, rules: Optional[List[Rule]] = None):
        # Plain attribute: a single bool store/load is atomic under the GIL.
        self.enabled = enabled
        self.rules = tuple(rules if rules is not None else default_rules())

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)

    def is_enabled(self) -> bool:
        return self.enabled

    def check(self, command: str) -> CheckResult:
        if not self.enabled:
            return CheckResult(allowed=True)
        command = command.strip()
        if not command:
            return CheckResult(allowed=True)
        for rule in self.rules:
            if rule.matches(command):
                return CheckResult(allowed=False, rule=rule)
        return CheckResult(allowed=True)

    def enforce(self, command: str) -> None:
        result = self.check(command)
        if not result.allowed:
            raise CommandRestrictedError(result.command, result.category.value, result.category.description)
