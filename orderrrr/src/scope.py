from __future__ import annotations

import logging
from collections.abc import Iterable

from orderrrr.src.config import ManagedResourceRule, ScopeConfig
from orderrrr.src.models import Workload, WorkloadIdentity

LOGGER = logging.getLogger(__name__)


def _identity_of(workload: Workload | WorkloadIdentity) -> WorkloadIdentity:
    return workload.identity if isinstance(workload, Workload) else workload


def rule_applies(workload: Workload | WorkloadIdentity, rule: ManagedResourceRule) -> bool:
    """Return True if *rule* lets its resource changes roll *workload*.

    A blacklisted controller is always excluded.  When the rule avoids all
    controllers unless whitelisted, only whitelisted controllers remain.
    """
    identity = _identity_of(workload)
    if identity in rule.blacklisted_controllers:
        LOGGER.debug("Ignoring %s due to blacklist rule for %s", identity, rule.resource)
        return False
    if identity in rule.whitelisted_controllers:
        return True
    if rule.avoid_all_controllers_unless_whitelisted:
        LOGGER.debug("Ignoring %s due to whitelist mode on %s", identity, rule.resource)
        return False
    return True


def applicable_rules(
    workload: Workload | WorkloadIdentity, rules: Iterable[ManagedResourceRule]
) -> list[ManagedResourceRule]:
    return [rule for rule in rules if rule_applies(workload, rule)]


def in_scope(
    workload: Workload | WorkloadIdentity | None,
    rules: Iterable[ManagedResourceRule],
    scope: ScopeConfig | None,
) -> bool:
    """Decide whether *workload* could ever be actioned under *rules* and *scope*.

    The namespace filter runs first; after that at least one rule must apply.
    Being in scope says nothing about whether a restart is due right now.
    """
    if workload is None or scope is None:
        return False

    identity = _identity_of(workload)
    if not scope.namespace_allowed(identity.namespace):
        LOGGER.debug("Ignoring %s outside of configured namespaces", identity)
        return False

    return any(rule_applies(identity, rule) for rule in rules)
