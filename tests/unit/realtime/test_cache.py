"""Tests for the compiled-rule cache: lazy population, invalidation, single flight."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from trialrules.errors import RuleNotFound, RuleValidationError
from trialrules.models.catalog import FieldCatalog, FieldSpec, FieldType
from trialrules.models.rule import Rule, RuleContext
from trialrules.pipeline import build_realtime
from trialrules.realtime.cache import RuleCache
from trialrules.realtime.compiler import RealTimeValidator
from trialrules.storage.rules import RuleStore

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def catalog() -> FieldCatalog:
    return FieldCatalog.from_specs(
        [FieldSpec(name="systolic_bp", form="vitals", type=FieldType.NUMERIC)]
    )


@pytest.fixture()
def store(tmp_path: Path) -> RuleStore:
    s = RuleStore(tmp_path / "rules.db")
    yield s
    s.close()


def _make_rule(rule_id: str = "BP_SYS", text: str = "between 40 and 200", **kwargs: object) -> Rule:
    return Rule(rule_id=rule_id, text=text, field="systolic_bp", **kwargs)


class TestGetOrCompile:
    def test_compiles_on_miss_and_reuses(self, store: RuleStore, catalog: FieldCatalog) -> None:
        store.save(_make_rule())
        cache = RuleCache(store, catalog)
        assert "BP_SYS" not in cache

        first = cache.get_or_compile("BP_SYS")
        second = cache.get_or_compile("BP_SYS")

        assert first is second
        assert len(cache) == 1
        assert cache.get("BP_SYS") is first

    def test_unknown_rule(self, store: RuleStore, catalog: FieldCatalog) -> None:
        cache = RuleCache(store, catalog)
        with pytest.raises(RuleNotFound):
            cache.get_or_compile("NOPE")

    def test_inactive_rule_never_cached(self, store: RuleStore, catalog: FieldCatalog) -> None:
        store.save(_make_rule(active=False))
        cache = RuleCache(store, catalog)
        with pytest.raises(RuleNotFound):
            cache.get_or_compile("BP_SYS")
        assert len(cache) == 0

    def test_batch_rule_not_served(self, store: RuleStore, catalog: FieldCatalog) -> None:
        store.save(_make_rule(context=RuleContext.BATCH))
        cache = RuleCache(store, catalog)
        with pytest.raises(RuleNotFound):
            cache.get_or_compile("BP_SYS")

    def test_failing_rule_not_cached(self, store: RuleStore, catalog: FieldCatalog) -> None:
        store.save(_make_rule(text="foo_bar > 1"))
        cache = RuleCache(store, catalog)
        with pytest.raises(RuleValidationError):
            cache.get_or_compile("BP_SYS")
        assert "BP_SYS" not in cache


class TestInvalidation:
    def test_save_drops_entry(self, store: RuleStore, catalog: FieldCatalog) -> None:
        store.save(_make_rule())
        cache = RuleCache(store, catalog)
        old = cache.get_or_compile("BP_SYS")

        store.save(_make_rule(text="between 50 and 190"))
        assert "BP_SYS" not in cache

        new = cache.get_or_compile("BP_SYS")
        assert new is not old
        assert new.content_hash != old.content_hash
        assert new.evaluate({"systolic_bp": 45}).valid is False

    def test_deactivation_drops_entry(self, store: RuleStore, catalog: FieldCatalog) -> None:
        store.save(_make_rule())
        cache = RuleCache(store, catalog)
        cache.get_or_compile("BP_SYS")

        store.set_active("BP_SYS", False)

        assert "BP_SYS" not in cache
        with pytest.raises(RuleNotFound):
            cache.get_or_compile("BP_SYS")

    def test_old_snapshot_unchanged(self, store: RuleStore, catalog: FieldCatalog) -> None:
        store.save(_make_rule())
        cache = RuleCache(store, catalog)
        cache.get_or_compile("BP_SYS")
        before = cache.snapshot()

        cache.invalidate("BP_SYS")

        assert "BP_SYS" in before
        assert "BP_SYS" not in cache.snapshot()

    def test_snapshot_is_read_only(self, store: RuleStore, catalog: FieldCatalog) -> None:
        cache = RuleCache(store, catalog)
        with pytest.raises(TypeError):
            cache.snapshot()["X"] = None  # type: ignore[index]

    def test_replace_and_clear(self, store: RuleStore, catalog: FieldCatalog) -> None:
        store.save(_make_rule())
        cache = RuleCache(store, catalog)
        validator = build_realtime(_make_rule(), catalog)

        cache.replace({"BP_SYS": validator})
        assert cache.get("BP_SYS") is validator

        cache.clear()
        assert len(cache) == 0


class TestSingleFlight:
    def test_concurrent_misses_compile_once(
        self, store: RuleStore, catalog: FieldCatalog
    ) -> None:
        store.save(_make_rule())
        release = threading.Event()
        calls: list[str] = []

        def slow_compiler(rule: Rule, cat: FieldCatalog) -> RealTimeValidator:
            calls.append(rule.rule_id)
            release.wait(timeout=5)
            return build_realtime(rule, cat)

        cache = RuleCache(store, catalog, compiler=slow_compiler)
        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(cache.get_or_compile, "BP_SYS") for _ in range(8)]
            time.sleep(0.1)
            release.set()
            results = [f.result(timeout=5) for f in futures]

        assert calls == ["BP_SYS"]
        assert all(r is results[0] for r in results)

    def test_failure_shared_and_not_cached(
        self, store: RuleStore, catalog: FieldCatalog
    ) -> None:
        store.save(_make_rule(text="foo_bar > 1"))
        cache = RuleCache(store, catalog)
        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(cache.get_or_compile, "BP_SYS") for _ in range(4)]
            for future in futures:
                with pytest.raises(RuleValidationError):
                    future.result(timeout=5)
        assert len(cache) == 0

    def test_unexpected_error_does_not_strand_later_calls(
        self, store: RuleStore, catalog: FieldCatalog
    ) -> None:
        store.save(_make_rule())
        calls: list[str] = []

        def flaky_compiler(rule: Rule, cat: FieldCatalog) -> RealTimeValidator:
            calls.append(rule.rule_id)
            if len(calls) == 1:
                raise ValueError("broken catalog entry")
            return build_realtime(rule, cat)

        cache = RuleCache(store, catalog, compiler=flaky_compiler)
        with pytest.raises(ValueError, match="broken catalog entry"):
            cache.get_or_compile("BP_SYS")

        with ThreadPoolExecutor(max_workers=1) as pool:
            validator = pool.submit(cache.get_or_compile, "BP_SYS").result(timeout=3)

        assert validator.rule_id == "BP_SYS"
        assert calls == ["BP_SYS", "BP_SYS"]
        assert "BP_SYS" in cache

    def test_unexpected_error_reaches_waiters(
        self, store: RuleStore, catalog: FieldCatalog
    ) -> None:
        store.save(_make_rule())
        release = threading.Event()

        def failing_compiler(rule: Rule, cat: FieldCatalog) -> RealTimeValidator:
            release.wait(timeout=5)
            raise KeyError("systolic_bp")

        cache = RuleCache(store, catalog, compiler=failing_compiler)
        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(cache.get_or_compile, "BP_SYS") for _ in range(4)]
            time.sleep(0.1)
            release.set()
            for future in futures:
                with pytest.raises(KeyError):
                    future.result(timeout=3)
        assert len(cache) == 0
