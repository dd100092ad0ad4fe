"""Feedback learning and retraining tests."""

import pytest

from spend_classifier.config import settings
from spend_classifier.core.exceptions import NotFoundError
from spend_classifier.models import MatchType, RuleScope, RuleSource
from spend_classifier.services.feedback_service import FeedbackLearner, RetrainingService, extract_keywords
from spend_classifier.services.merchant_memory import MerchantMemory
from spend_classifier.services.rule_service import RuleStore


@pytest.mark.parametrize(
    "text, expected",
    [
        ("WALMART SUPERCENTER #1234 BENTONVILLE", ["walmart", "supercenter", "#1234"]),
        ("The Home Depot", ["home", "depot"]),
        ("A TO B", []),
        ("", []),
        (None, []),
    ],
)
def test_extract_keywords(text, expected):
    assert extract_keywords(text) == expected


async def _rule(repository, pattern, category_id):
    rule, _ = await repository.upsert_rule(
        pattern=pattern, match_type="regex", category_id=category_id, scope="transaction", source="seed"
    )
    return rule


@pytest.mark.asyncio
async def test_correction_counts_against_the_suggesting_rule(repository, categories, make_transaction):
    rule = await _rule(repository, "walmart", categories["Groceries"])
    txn = await make_transaction(
        "txn-1",
        description="WALMART SUPERCENTER 1234",
        merchant_name="WALMART #1234",
        category_id=categories["Groceries"],
        confidence=85,
        classification_method="rule",
        rule_id=rule.id,
    )
    learner = FeedbackLearner(repository)

    outcome = await learner.record_correction(txn, categories["Shopping"])

    assert outcome.learned and outcome.action == "created"
    assert outcome.pattern == "walmart"
    learned = await repository.get_rule(outcome.rule_id)
    assert (learned.match_type, learned.scope, learned.source) == ("partial", "transaction", "user")
    assert learned.name == "walmart -> Shopping"

    suggesting = await repository.get_rule(rule.id)
    assert (suggesting.correct_count, suggesting.incorrect_count) == (0, 1)

    feedback = await repository.get_unprocessed_feedback(10)
    assert len(feedback) == 1
    assert feedback[0].suggested_category_id == categories["Groceries"]
    assert feedback[0].actual_category_id == categories["Shopping"]
    assert feedback[0].method == "rule"

    txn = await repository.get_transaction("txn-1")
    assert (txn.category_id, txn.confidence, txn.verified) == (categories["Shopping"], 100, True)
    assert txn.classification_method == "user"
    assert (await repository.get_merchant_mapping("walmart #1234")).category_id == categories["Shopping"]


@pytest.mark.asyncio
async def test_confirmation_counts_for_merchant_memory(repository, categories, make_transaction):
    memory = MerchantMemory(repository)
    await memory.upsert("Trader Joes #42", categories["Groceries"])
    txn = await make_transaction(
        "txn-2",
        description="TRADER JOE'S #42",
        merchant_name="Trader Joes #42",
        category_id=categories["Groceries"],
        confidence=95,
        classification_method="merchant_exact",
    )

    await FeedbackLearner(repository).record_correction(txn, categories["Groceries"])

    mapping = await repository.get_merchant_mapping("trader joes #42")
    assert (mapping.correct_count, mapping.incorrect_count) == (1, 0)
    assert mapping.usage_count == 2
    assert await repository.count_unprocessed_feedback() == 0


@pytest.mark.asyncio
async def test_verified_record_is_not_scored_twice(repository, categories, make_transaction):
    rule = await _rule(repository, "shell", categories["Gas"])
    txn = await make_transaction(
        "txn-3",
        description="SHELL OIL 5744",
        merchant_name="SHELL",
        category_id=categories["Gas"],
        confidence=85,
        classification_method="rule",
        rule_id=rule.id,
    )
    learner = FeedbackLearner(repository)

    await learner.record_correction(txn, categories["Gas"], learn=False)
    await learner.record_correction(txn, categories["Transportation"], learn=False)

    rule = await repository.get_rule(rule.id)
    assert (rule.correct_count, rule.incorrect_count) == (1, 0)
    assert await repository.count_unprocessed_feedback() == 1


@pytest.mark.asyncio
async def test_correction_requires_existing_category(repository, categories, make_transaction):
    txn = await make_transaction("txn-4", description="Something")
    with pytest.raises(NotFoundError):
        await FeedbackLearner(repository).record_correction(txn, 987654)


@pytest.mark.asyncio
async def test_nothing_to_learn_from_short_words(repository, categories):
    learner = FeedbackLearner(repository)

    outcome = await learner.learn("A TO B", None, categories["Transfer"])

    assert not outcome.learned
    assert outcome.reason == "No pattern to learn"
    assert await repository.get_rules(enabled_only=False) == []
    # The description still serves as a merchant memory key
    assert (await repository.get_merchant_mapping("a to b")).category_id == categories["Transfer"]


@pytest.mark.asyncio
async def test_learning_twice_reinforces_the_same_rule(repository, categories):
    learner = FeedbackLearner(repository)

    first = await learner.learn("Uber trip downtown", "UBER", categories["Transportation"])
    second = await learner.learn("UBER TRIP 8812", "UBER", categories["Transportation"])

    assert (first.action, second.action) == ("created", "updated")
    assert first.rule_id == second.rule_id
    rules = await repository.get_rules(enabled_only=False)
    assert len(rules) == 1
    assert (rules[0].usage_count, rules[0].correct_count) == (1, 1)


@pytest.mark.asyncio
async def test_learned_rule_is_visible_to_shared_rule_store(repository, categories):
    rules = RuleStore(repository)
    assert await rules.match("LYFT *RIDE", "") is None
    learner = FeedbackLearner(repository, rules=rules)

    await learner.learn("LYFT RIDE THU 8PM", "LYFT *RIDE", categories["Transportation"])

    assert (await rules.match("LYFT *RIDE", "")).category_id == categories["Transportation"]


@pytest.mark.asyncio
async def test_item_correction_learns_title_rule_and_memory(repository, categories, make_item):
    item = await make_item(
        "Organic Bananas 2lb",
        category_id=categories["Shopping"],
        confidence=40,
        classification_method="fallback_shopping",
    )

    outcome = await FeedbackLearner(repository).record_correction(item, categories["Groceries"])

    rule = await repository.get_rule(outcome.rule_id)
    assert (rule.pattern, rule.scope) == ("organic", "item")
    mapping = await repository.get_merchant_mapping("organic bananas 2lb")
    assert mapping.category_id == categories["Groceries"]
    assert [m.merchant_key for m in await MerchantMemory(repository).list_mappings()] == ["organic bananas 2lb"]
    feedback = await repository.get_unprocessed_feedback(10)
    assert feedback[0].item_type == "item"
    assert feedback[0].item_id == str(item.id)


async def _feedback(repository, description, actual_id, item_type="transaction", suggested_id=None):
    return await repository.record_feedback(
        item_id="x",
        item_type=item_type,
        description=description,
        merchant=None,
        suggested_category_id=suggested_id,
        actual_category_id=actual_id,
        method="rule",
        confidence=85,
    )


@pytest.mark.asyncio
async def test_retraining_promotes_repeated_corrections(repository, categories):
    await _feedback(repository, "NETFLIX.COM", categories["Subscriptions"])
    await _feedback(repository, "netflix.com ", categories["Subscriptions"])
    await _feedback(repository, "NETFLIX.COM", categories["Entertainment"])
    await _feedback(repository, "AMC THEATRES", categories["Entertainment"])
    await _feedback(repository, "Vitamin D3", categories["Healthcare"], item_type="item")
    await _feedback(repository, "vitamin d3", categories["Healthcare"], item_type="item")
    rules = RuleStore(repository)
    service = RetrainingService(repository, rules=rules)

    summary = await service.retrain()

    assert summary["feedback_count"] == 6
    assert summary["rules_generated"] == 2
    learned = await repository.get_rules(enabled_only=False)
    assert sorted((r.pattern, r.scope, r.match_type, r.source) for r in learned) == [
        ("NETFLIX.COM", RuleScope.TRANSACTION.value, MatchType.EXACT.value, RuleSource.AI_LEARNING.value),
        ("Vitamin D3", RuleScope.ITEM.value, MatchType.EXACT.value, RuleSource.AI_LEARNING.value),
    ]
    assert await repository.count_unprocessed_feedback() == 0
    assert (await rules.match("Netflix.com", "")).category_id == categories["Subscriptions"]
    assert not service.is_retraining

    status = await service.status()
    assert status.pending_feedback == 0
    assert status.last_training_at is not None


@pytest.mark.asyncio
async def test_retrain_waits_for_threshold(repository, categories):
    service = RetrainingService(repository)
    for n in range(4):
        await _feedback(repository, f"merchant {n}", categories["Shopping"])

    assert await service.check_and_retrain() is None
    status = await service.status()
    assert (status.pending_feedback, status.threshold, status.next_retraining_in) == (4, 5, 1)

    await _feedback(repository, "merchant 4", categories["Shopping"])
    summary = await service.check_and_retrain()
    assert summary["feedback_count"] == 5
    assert summary["rules_generated"] == 0


@pytest.mark.asyncio
async def test_threshold_grows_with_classified_records(repository, categories, make_transaction, monkeypatch):
    monkeypatch.setattr(settings, "retrain_initial_phase_limit", 2)
    monkeypatch.setattr(settings, "retrain_learning_phase_limit", 3)
    service = RetrainingService(repository)
    assert await service.threshold() == 5

    await make_transaction("a", description="x", category_id=categories["Gas"], confidence=85)
    await make_transaction("b", description="y", category_id=categories["Gas"], confidence=85)
    assert await service.threshold() == 10

    await make_transaction("c", description="z", category_id=categories["Gas"], confidence=85)
    assert await service.threshold() == 50


@pytest.mark.asyncio
async def test_retraining_is_not_reentrant(repository, categories):
    service = RetrainingService(repository)
    for n in range(6):
        await _feedback(repository, "same", categories["Shopping"])
    service.is_retraining = True

    assert await service.check_and_retrain() is None
    assert await service.retrain() is None
    assert await repository.count_unprocessed_feedback() == 6
