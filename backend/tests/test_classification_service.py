"""Classification service tests: stored records end to end."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spend_classifier.core import database
from spend_classifier.core.exceptions import NotFoundError
from spend_classifier.schemas.classification import ClassificationMethod, ItemType
from spend_classifier.schemas.classification_rule import RuleCreate
from spend_classifier.services.classification_service import ClassificationService, classification_session
from spend_classifier.services.llm_service import AIClassifier
from spend_classifier.services.merchant_memory import MerchantMemory


@pytest.fixture
def service(repository, ollama):
    return ClassificationService(repository, ai=AIClassifier(ollama("CATEGORY: Groceries\nCONFIDENCE: 85")))


async def _regex_rule(repository, pattern, category_id):
    rule, _ = await repository.upsert_rule(
        pattern=pattern, match_type="regex", category_id=category_id, scope="transaction", source="seed"
    )
    return rule


@pytest.mark.asyncio
async def test_classify_transaction_persists_result(service, repository, categories, make_transaction):
    rule = await _regex_rule(repository, "walmart|wal-mart", categories["Groceries"])
    await make_transaction("t-1", description="WALMART #1234 BENTONVILLE", merchant_name="WALMART #1234")

    result = await service.classify_transaction("t-1")

    assert (result.category, result.confidence) == ("Groceries", 85)
    txn = await repository.get_transaction("t-1")
    assert (txn.category_id, txn.confidence, txn.rule_id) == (categories["Groceries"], 85, rule.id)
    assert txn.classification_method == ClassificationMethod.RULE.value
    assert not txn.verified


@pytest.mark.asyncio
async def test_verified_transaction_is_not_overwritten(service, repository, categories, make_transaction):
    await _regex_rule(repository, "walmart", categories["Groceries"])
    await make_transaction(
        "t-2", merchant_name="WALMART #7", category_id=categories["Shopping"], confidence=100, verified=True
    )

    result = await service.classify_transaction("t-2")

    assert result.category == "Groceries"
    txn = await repository.get_transaction("t-2")
    assert (txn.category_id, txn.confidence, txn.verified) == (categories["Shopping"], 100, True)


@pytest.mark.asyncio
async def test_unknown_records_raise(service, categories):
    with pytest.raises(NotFoundError):
        await service.classify_transaction("missing")
    with pytest.raises(NotFoundError):
        await service.classify_item(123456)
    with pytest.raises(NotFoundError):
        await service.correct(ItemType.TRANSACTION, "missing", categories["Gas"])


@pytest.mark.asyncio
async def test_recategorize_is_a_dry_run(service, repository, categories, make_transaction):
    rule = await _regex_rule(repository, "shell", categories["Gas"])
    await make_transaction("r-1", merchant_name="SHELL OIL 1")
    await make_transaction("r-2", merchant_name="UNKNOWN VENDOR")
    await make_transaction("r-3", merchant_name="SHELL OIL 3", category_id=categories["Gas"], confidence=85)

    summary = await service.recategorize_transactions()

    assert summary == {"total": 2, "updated": 1}
    assert (await repository.get_transaction("r-1")).category_id == categories["Gas"]
    assert (await repository.get_transaction("r-2")).category_id is None
    assert await MerchantMemory(repository).list_mappings() == []
    assert (await repository.get_rule(rule.id)).usage_count == 0


@pytest.mark.asyncio
async def test_recategorize_all_skips_verified(service, repository, categories, make_transaction):
    await _regex_rule(repository, "shell", categories["Gas"])
    await make_transaction("v-1", merchant_name="SHELL", category_id=categories["Travel"], confidence=100, verified=True)
    await make_transaction("v-2", merchant_name="SHELL", category_id=categories["Travel"], confidence=50)

    summary = await service.recategorize_transactions(only_uncategorized=False)

    assert summary == {"total": 1, "updated": 1}
    assert (await repository.get_transaction("v-1")).category_id == categories["Travel"]
    assert (await repository.get_transaction("v-2")).category_id == categories["Gas"]


@pytest.mark.asyncio
async def test_classify_items_in_batch(service, repository, categories, make_item):
    items = [await make_item(f"Organic item {n}") for n in range(6)]
    ids = [item.id for item in items] + [999999]

    results = await service.classify_items(ids)

    assert sorted(results) == sorted(item.id for item in items)
    assert {(r.category, r.confidence, r.method) for r in results.values()} == {
        ("Groceries", 85, ClassificationMethod.AI)
    }
    stored = await repository.get_item(items[0].id)
    assert (stored.category_id, stored.confidence) == (categories["Groceries"], 85)


@pytest.mark.asyncio
async def test_correct_item_learns_title_rule(service, repository, categories, make_item):
    item = await make_item("Wine glasses, set of 4")
    await service.classify_item(item.id)

    outcome = await service.correct(ItemType.ITEM, item.id, categories["Shopping"])

    assert outcome.learned
    stored = await repository.get_item(item.id)
    assert (stored.category_id, stored.confidence, stored.verified) == (categories["Shopping"], 100, True)

    other = await make_item("Wine glasses, set of 6")
    result = await service.classify_item(other.id)
    assert (result.category, result.confidence, result.method) == ("Shopping", 90, ClassificationMethod.TITLE_RULE)


@pytest.mark.asyncio
async def test_correction_threshold_triggers_retraining(service, repository, categories, make_transaction):
    for n in range(5):
        await make_transaction(f"c-{n}", description="ZELLE PAYMENT TO MOM", category_id=categories["Income"], confidence=50)
        await service.correct(ItemType.TRANSACTION, f"c-{n}", categories["Transfer"])

    assert await repository.count_unprocessed_feedback() == 0
    status = await service.retraining.status()
    assert status.last_training_at is not None
    rules = await repository.get_rules(scope="transaction")
    assert any(r.match_type == "exact" and r.pattern == "ZELLE PAYMENT TO MOM" for r in rules)


@pytest.mark.asyncio
async def test_classification_session_commits_on_exit(engine, monkeypatch, ollama):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(database, "async_session_factory", factory)

    async with classification_session(ai=AIClassifier(ollama())) as service:
        gas = await service.repository.create_category("Gas", None, {})
        await service.rules.create_rule(RuleCreate(pattern="shell", category_id=gas.id))

    async with classification_session() as service:
        rules = await service.rules.load()
        assert [rule.pattern for rule in rules] == ["shell"]


@pytest.mark.asyncio
async def test_classification_session_rolls_back_on_error(engine, monkeypatch):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(database, "async_session_factory", factory)

    with pytest.raises(NotFoundError):
        async with classification_session() as service:
            await service.repository.create_category("Travel", None, {})
            await service.classify_transaction("missing")

    async with classification_session() as service:
        assert await service.repository.get_categories() == []
