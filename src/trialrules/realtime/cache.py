"""Concurrency-safe cache of compiled real-time validators.

Readers look up the current snapshot (a read-only mapping) without taking
any lock. Writers copy the snapshot, modify the copy and swap the
reference, so a reader never sees a half-updated map. Concurrent misses
for the same rule id and content hash share one compilation.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from types import MappingProxyType

from loguru import logger

from trialrules.errors import RuleCompileError, RuleNotFound
from trialrules.models.catalog import FieldCatalog
from trialrules.models.rule import Rule, RuleContext
from trialrules.pipeline import build_realtime
from trialrules.realtime.compiler import RealTimeValidator
from trialrules.storage.rules import RuleStore

Compiler = Callable[[Rule, FieldCatalog], RealTimeValidator]


class RuleCache:
    """Lazily populated map of rule id -> RealTimeValidator."""

    def __init__(
        self,
        rules: RuleStore,
        catalog: FieldCatalog,
        *,
        compiler: Compiler = build_realtime,
    ) -> None:
        self._rules = rules
        self._catalog = catalog
        self._compiler = compiler
        self._snapshot: Mapping[str, RealTimeValidator] = MappingProxyType({})
        self._write_lock = threading.Lock()
        self._inflight: dict[tuple[str, str], Future[RealTimeValidator]] = {}
        rules.subscribe(self.invalidate)

    def snapshot(self) -> Mapping[str, RealTimeValidator]:
        """Current immutable view of the cache."""
        return self._snapshot

    def get(self, rule_id: str) -> RealTimeValidator | None:
        return self._snapshot.get(rule_id)

    def get_or_compile(self, rule_id: str) -> RealTimeValidator:
        """Return the compiled validator for a rule, compiling on a miss.

        Raises:
            RuleNotFound: If the rule does not exist, is inactive or is
                not a real-time rule.
            RuleSyntaxError, RuleValidationError, RuleCompileError: If the
                stored text no longer compiles. Nothing is cached.

        Any failure of the compiler is also delivered to callers waiting
        on the same compilation, so no waiter is left blocked.
        """
        rule = self._rules.get(rule_id)
        if rule is None or not rule.active or rule.context != RuleContext.REALTIME:
            msg = f"No active real-time rule '{rule_id}'"
            raise RuleNotFound(msg)

        digest = rule.content_hash
        cached = self._snapshot.get(rule_id)
        if cached is not None and cached.content_hash == digest:
            return cached

        key = (rule_id, digest)
        with self._write_lock:
            cached = self._snapshot.get(rule_id)
            if cached is not None and cached.content_hash == digest:
                return cached
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            logger.debug("Waiting on in-flight compilation of {}", rule_id)
            return future.result()

        try:
            validator = self._compiler(rule, self._catalog)
        except Exception as exc:
            if isinstance(exc, RuleCompileError):
                logger.error("Rule {} hit a compiler defect: {}", rule_id, exc)
            with self._write_lock:
                del self._inflight[key]
            future.set_exception(exc)
            raise

        with self._write_lock:
            del self._inflight[key]
            future.set_result(validator)
            # A save that landed while compiling makes this result stale.
            current = self._rules.get(rule_id)
            if current is not None and current.active and current.content_hash == digest:
                self._swap({**self._snapshot, rule_id: validator})
        logger.debug("Cached rule {} ({})", rule_id, digest)
        return validator

    def invalidate(self, rule_id: str) -> None:
        """Drop a rule's compiled validator, if cached."""
        with self._write_lock:
            if rule_id not in self._snapshot:
                return
            self._swap({k: v for k, v in self._snapshot.items() if k != rule_id})
        logger.debug("Invalidated cached rule {}", rule_id)

    def replace(self, validators: Mapping[str, RealTimeValidator]) -> None:
        """Swap in a whole new set of validators at once."""
        with self._write_lock:
            self._swap(dict(validators))

    def clear(self) -> None:
        self.replace({})

    def _swap(self, entries: dict[str, RealTimeValidator]) -> None:
        self._snapshot = MappingProxyType(entries)

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._snapshot
