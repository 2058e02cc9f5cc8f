"""
Operation Classifier - maps an intercepted git/gh command line to an OperationContext.

A declarative rule table decides which invocations need proof of presence:

    git  push | pull | fetch | clone
    git  remote add | update | set-url
    git  submodule update ... --remote
    gh   pr / issue / release / repo / workflow / secret / auth state changes

Everything else (status, log, diff, gh pr view, ...) passes through.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence, Tuple

from .models import Classification, OperationContext

# git options that consume the following argument
_GIT_OPTIONS_WITH_VALUE = frozenset({'-C', '-c', '--git-dir', '--work-tree', '--namespace', '--exec-path'})
# gh options that consume the following argument
_GH_OPTIONS_WITH_VALUE = frozenset({'-R', '--repo'})


@dataclass(frozen=True)
class ClassificationRule:
    """
    One entry of the rule table.

    `verb` is the first non-option argument (for gh, the command group such
    as "pr"). `argument_pattern`, if set, must match the remaining arguments
    joined by spaces; for gh the action comes first.
    """
    tool: str
    verb: str
    argument_pattern: Optional[Pattern[str]] = None

    def matches(self, tool: str, verb: str, arguments: str) -> bool:
        if tool != self.tool or verb != self.verb:
            return False
        if self.argument_pattern is None:
            return True
        return bool(self.argument_pattern.search(arguments))


def _rules(tool: str, group: str, actions: str) -> List[ClassificationRule]:
    alternatives = "|".join(re.escape(action) for action in actions.split())
    return [ClassificationRule(tool, group, re.compile(rf'^({alternatives})(\s|$)'))]


DEFAULT_RULES: Tuple[ClassificationRule, ...] = tuple(
    [ClassificationRule('git', verb) for verb in ('push', 'pull', 'fetch', 'clone')]
    + [ClassificationRule('git', 'remote', re.compile(r'^(add|update|set-url)\b'))]
    + [ClassificationRule('git', 'submodule', re.compile(r'^update\b.*(^|\s)--remote(\s|$)'))]
    + _rules('gh', 'pr', 'create merge close reopen edit ready review')
    + _rules('gh', 'issue', 'create close reopen edit delete transfer')
    + _rules('gh', 'release', 'create delete edit upload')
    + _rules('gh', 'repo', 'create delete clone fork archive rename')
    + _rules('gh', 'workflow', 'run enable disable')
    + _rules('gh', 'secret', 'set delete remove')
    + _rules('gh', 'auth', 'login logout refresh setup-git')
)


def _split_git(argv: Sequence[str]) -> Tuple[str, List[str]]:
    """Skip git's global options; return (subcommand, rest)"""
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg in _GIT_OPTIONS_WITH_VALUE:
            i += 2
            continue
        if arg.startswith('-'):
            i += 1
            continue
        return arg, list(argv[i + 1:])
    return "", []


def _positional(argv: Sequence[str], options_with_value: frozenset) -> List[int]:
    indexes = []
    skip = False
    for i, arg in enumerate(argv):
        if skip:
            skip = False
            continue
        if arg in options_with_value:
            skip = True
            continue
        if arg.startswith('-'):
            continue
        indexes.append(i)
    return indexes


def _split_gh(argv: Sequence[str]) -> Tuple[str, List[str]]:
    """Return (group, [action, *rest]); gh flags may precede the group or the action"""
    positions = _positional(argv, _GH_OPTIONS_WITH_VALUE)
    if not positions:
        return "", []
    group_index = positions[0]
    if len(positions) < 2:
        return argv[group_index], [a for i, a in enumerate(argv) if i != group_index]
    action_index = positions[1]
    rest = [a for i, a in enumerate(argv) if i not in (group_index, action_index)]
    return argv[group_index], [argv[action_index]] + rest


class OperationClassifier:
    """Classifies git/gh invocations against a rule table"""

    def __init__(self, rules: Sequence[ClassificationRule] = DEFAULT_RULES):
        self.rules = tuple(rules)

    def split(self, tool: str, argv: Sequence[str]) -> Tuple[str, List[str]]:
        if tool == 'gh':
            return _split_gh(argv)
        return _split_git(argv)

    def classify(self, tool: str, argv: Sequence[str]) -> OperationContext:
        verb, rest = self.split(tool, argv)
        arguments = " ".join(rest)
        requires = any(rule.matches(tool, verb, arguments) for rule in self.rules)
        return OperationContext(
            tool=tool,
            verb=verb,
            arguments=arguments,
            classification=(
                Classification.REQUIRES_VERIFICATION if requires else Classification.PASS_THROUGH
            ),
        )


__all__ = ['ClassificationRule', 'OperationClassifier', 'DEFAULT_RULES']
