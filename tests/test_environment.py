from __future__ import annotations

import pytest

from faultline import (
    Failure,
    MissingCapability,
    StatusFault,
    Success,
    access,
    fail,
    make_environment,
    pure,
    run,
    suspend,
)


def greeting():
    return access("name").map(lambda name: f"hello {name}")


class TestRequirements:
    def test_access_requires_its_name(self):
        assert access("db").requires == {"db"}

    def test_requires_accumulate_through_combinators(self):
        effect = access("a").flat_map(lambda _: pure(1), requires={"b"}).map(str)
        assert effect.requires == {"a", "b"}

    def test_provide_discharges_names(self):
        effect = access("a").flat_map(lambda _: access("b"), requires={"b"})
        assert effect.provide_environment(a=1).requires == {"b"}
        assert effect.provide_environment({"a": 1, "b": 2}).requires == frozenset()

    @pytest.mark.asyncio
    async def test_provide_is_commutative(self):
        effect = access("x").flat_map(lambda x: access("y").map(lambda y: (x, y)), requires={"y"})
        xy = effect.provide_environment(x=1).provide_environment(y=2)
        yx = effect.provide_environment(y=2).provide_environment(x=1)
        assert xy.requires == yx.requires == frozenset()
        assert await run(xy) == await run(yx) == Success((1, 2))


class TestMissingCapability:
    @pytest.mark.asyncio
    async def test_refused_before_any_step(self):
        steps = []

        def first():
            steps.append("ran")
            return access("transport")

        effect = suspend(first, requires={"transport"})
        outcome = await run(effect, {})
        assert outcome == Failure(MissingCapability(["transport"]))
        assert steps == []

    @pytest.mark.asyncio
    async def test_names_every_missing_capability(self):
        effect = access("b").flat_map(lambda _: access("a"), requires={"a"})
        outcome = await run(effect)
        assert outcome.error.names == ("a", "b")
        assert "Hint" in str(outcome.error)

    @pytest.mark.asyncio
    async def test_undeclared_dynamic_requirement_checked_at_start(self):
        steps = []
        effect = pure(1).tap(steps.append).flat_map(lambda _: access("late"))
        outcome = await run(effect)
        assert outcome == Failure(MissingCapability(["late"]))
        assert steps == [1]

    @pytest.mark.asyncio
    async def test_extra_capabilities_are_ignored(self):
        assert await run(greeting(), {"name": "ada", "unused": object()}) == Success("hello ada")


class TestScoping:
    @pytest.mark.asyncio
    async def test_inner_provide_shadows_only_nested_description(self):
        effect = greeting().provide_environment(name="inner").flat_map(
            lambda inner: greeting().map(lambda outer: (inner, outer)),
            requires={"name"},
        )
        assert await run(effect, {"name": "outer"}) == Success(("hello inner", "hello outer"))

    @pytest.mark.asyncio
    async def test_scope_restored_after_failure(self):
        inner = access("name").flat_map(lambda _: fail(StatusFault(500)))
        effect = (
            inner.provide_environment(name="inner")
            .catch_all(lambda _: access("name"), requires={"name"})
        )
        assert await run(effect, {"name": "outer"}) == Success("outer")


class TestEnvironmentValue:
    def test_environment_is_immutable(self):
        env = make_environment({"a": 1}, b=2)
        with pytest.raises(TypeError):
            env["c"] = 3  # type: ignore[index]
        assert dict(env) == {"a": 1, "b": 2}

    def test_names_must_be_strings(self):
        with pytest.raises(TypeError):
            make_environment({1: "x"})  # type: ignore[dict-item]

    @pytest.mark.asyncio
    async def test_caller_mapping_is_snapshotted(self):
        source = {"name": "before"}
        effect = pure(None).tap(lambda _: source.update(name="after")).flat_map(
            lambda _: greeting(), requires={"name"}
        )
        assert await run(effect, source) == Success("hello before")
