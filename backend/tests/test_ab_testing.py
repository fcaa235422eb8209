"""Tests for A/B test management, assignment and analysis."""
import uuid

import pytest

from leadlens.analytics.ab_testing import (
    ABTestDefinition,
    ABTestManager,
    TestStatus,
    Variant,
    VariantDefinition,
    calculate_significance,
    string_hash,
)
from leadlens.analytics.events import EventType
from leadlens.core.exceptions import (
    InvalidTestDefinitionError,
    InvalidTestTransitionError,
    TestNotFoundError,
)
from leadlens.core.storage import MemoryStorage


def _definition(status=TestStatus.RUNNING, traffic=(50, 50), test_id="cta_test"):
    return ABTestDefinition(
        id=test_id,
        name="CTA copy",
        status=status,
        goal="soft_member",
        variants=[
            VariantDefinition(id=vid, name=vid, traffic=t)
            for vid, t in zip(["control", "variant_a", "variant_b"], traffic)
        ],
    )


def test_string_hash_matches_known_values():
    assert string_hash("") == 0
    assert string_hash("abc") == 96354
    assert string_hash("hello") == 99162322
    # Hashes to the minimum 32-bit integer; the absolute value stays positive
    assert string_hash("polygenelubricants") == 2147483648


def test_assignment_is_stable():
    manager = ABTestManager()
    test_id = manager.create_test(_definition())

    assignments = {manager.get_assignment(test_id, "abc") for _ in range(10)}
    assert len(assignments) == 1
    assert assignments <= {"control", "variant_a"}


def test_assignment_split_is_balanced():
    manager = ABTestManager()
    test_id = manager.create_test(_definition())

    users = [str(uuid.uuid5(uuid.NAMESPACE_URL, f"user-{i}")) for i in range(2000)]
    control = sum(1 for u in users if manager.get_assignment(test_id, u) == "control")
    assert 0.45 <= control / len(users) <= 0.55


def test_assignment_requires_running_test():
    manager = ABTestManager()
    test_id = manager.create_test(_definition(status=TestStatus.DRAFT))

    assert manager.get_assignment(test_id, "abc") is None
    assert manager.get_assignment("unknown", "abc") is None

    manager.start_test(test_id)
    assert manager.get_assignment(test_id, "abc") in {"control", "variant_a"}


def test_status_defaults_to_draft():
    manager = ABTestManager()
    test_id = manager.create_test(ABTestDefinition(
        name="Draft",
        variants=[VariantDefinition(id="only", name="only", traffic=100)],
    ))
    assert test_id.startswith("test_")
    assert manager.get_test(test_id).status == TestStatus.DRAFT


def test_lifecycle_transitions():
    manager = ABTestManager()
    test_id = manager.create_test(_definition(status=TestStatus.DRAFT))

    assert manager.start_test(test_id).status == TestStatus.RUNNING
    assert manager.pause_test(test_id).status == TestStatus.PAUSED
    completed = manager.complete_test(test_id)
    assert completed.status == TestStatus.COMPLETED
    assert completed.end_date is not None

    assert [t.id for t in manager.list_tests(TestStatus.COMPLETED)] == [test_id]
    assert manager.list_tests(TestStatus.RUNNING) == []


def test_unknown_test_transition_raises():
    with pytest.raises(TestNotFoundError):
        ABTestManager().start_test("missing")


@pytest.mark.parametrize("traffic", [(60, 30), (50, 60), (0, 0)])
def test_traffic_must_sum_to_100(traffic):
    with pytest.raises(InvalidTestDefinitionError):
        ABTestManager().create_test(_definition(traffic=traffic))


def test_three_way_split_within_tolerance():
    manager = ABTestManager()
    test_id = manager.create_test(_definition(traffic=(33.33, 33.33, 33.34)))
    assert len(manager.get_test(test_id).variants) == 3


def test_duplicate_variant_ids_rejected():
    definition = ABTestDefinition(
        name="Dup",
        variants=[
            VariantDefinition(id="a", name="a", traffic=50),
            VariantDefinition(id="a", name="b", traffic=50),
        ],
    )
    with pytest.raises(InvalidTestDefinitionError):
        ABTestManager().create_test(definition)


def test_empty_variants_rejected():
    with pytest.raises(InvalidTestDefinitionError):
        ABTestManager().create_test(ABTestDefinition(name="Empty", variants=[]))


def test_record_event(make_event):
    manager = ABTestManager()
    test_id = manager.create_test(_definition())

    tagged = make_event(user_id="u1", abTest=test_id, abVariant="control")
    assert manager.record_event(tagged)

    assert not manager.record_event(make_event(session_id="anon", abTest=test_id, abVariant="control"))
    assert not manager.record_event(make_event(user_id="u1", abTest=test_id, abVariant="nope"))
    assert not manager.record_event(make_event(user_id="u1", abTest="other", abVariant="control"))
    assert not manager.record_event(make_event(user_id="u1"))


def test_results_pick_winner(make_event):
    manager = ABTestManager()
    test_id = manager.create_test(_definition())

    events = []
    for variant, converters in (("control", 1), ("variant_a", 2)):
        for i in range(4):
            user = f"{variant}-{i}"
            events.append(make_event(user_id=user, abTest=test_id, abVariant=variant))
            if i < converters:
                events.append(make_event(
                    EventType.CONVERSION, user_id=user, action="soft_member",
                    abTest=test_id, abVariant=variant,
                ))
    events.append(make_event(user_id="untagged"))

    result = manager.get_results(test_id, events)
    control, variant_a = result.variants

    assert (control.participants, control.conversions, control.conversion_rate) == (4, 1, 25)
    assert (variant_a.participants, variant_a.conversions, variant_a.conversion_rate) == (4, 2, 50)
    assert variant_a.is_winner and not control.is_winner
    # Below the minimum sample size
    assert result.significance == 0

    # Counters are kept as the latest snapshot
    assert manager.get_test(test_id).variants[1].participants == 4


def test_results_tie_keeps_first_variant():
    manager = ABTestManager()
    test_id = manager.create_test(_definition())

    result = manager.get_results(test_id, [])
    assert [v.is_winner for v in result.variants] == [True, False]
    assert manager.get_results("missing", []) is None


def _variant(vid, participants, conversions):
    return Variant(
        id=vid,
        name=vid,
        traffic=50,
        participants=participants,
        conversions=conversions,
        conversion_rate=conversions / participants * 100,
    )


def test_significance_thresholds():
    assert calculate_significance([_variant("c", 1000, 100), _variant("v", 1000, 150)]) == 99
    assert calculate_significance([_variant("c", 1000, 100), _variant("v", 1000, 105)]) == 18


def test_significance_needs_samples_and_variants():
    assert calculate_significance([_variant("c", 1000, 100)]) == 0
    assert calculate_significance([_variant("c", 99, 10), _variant("v", 1000, 150)]) == 0


def test_significance_guards_non_positive_variance():
    assert calculate_significance([_variant("c", 100, 200), _variant("v", 100, 200)]) == 0
    assert calculate_significance([_variant("c", 100, 0), _variant("v", 100, 0)]) == 0


@pytest.mark.asyncio
async def test_persist_and_load():
    storage = MemoryStorage()
    manager = ABTestManager(storage=storage)
    test_id = manager.create_test(_definition())
    manager.pause_test(test_id)
    await manager.persist()

    reloaded = ABTestManager(storage=storage)
    assert await reloaded.load() == 1
    test = reloaded.get_test(test_id)
    assert test.status == TestStatus.PAUSED
    assert [v.id for v in test.variants] == ["control", "variant_a"]


def test_default_test_is_running(engine):
    assert engine.get_ab_test_assignment("tool_landing_cta", "abc") in {"control", "variant_a"}


def test_existing_test_id_cannot_be_redefined():
    manager = ABTestManager()
    test_id = manager.create_test(_definition())

    with pytest.raises(InvalidTestDefinitionError, match="already exists"):
        manager.create_test(ABTestDefinition(
            id=test_id,
            name="Replacement",
            variants=[VariantDefinition(id="other", name="other", traffic=100)],
        ))
    assert [v.id for v in manager.get_test(test_id).variants] == ["control", "variant_a"]


def test_traffic_weights_must_be_percentages():
    with pytest.raises(InvalidTestDefinitionError, match="between 0 and 100"):
        ABTestManager().create_test(_definition(traffic=(-50, 150)))


def test_completed_test_is_final():
    manager = ABTestManager()
    test_id = manager.create_test(_definition())
    manager.complete_test(test_id)

    with pytest.raises(InvalidTestTransitionError):
        manager.start_test(test_id)
    with pytest.raises(InvalidTestTransitionError):
        manager.pause_test(test_id)
    assert manager.get_test(test_id).status == TestStatus.COMPLETED
