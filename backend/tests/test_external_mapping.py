"""External taxonomy mapper tests."""

import pytest

from spend_classifier.core.exceptions import NotFoundError, ReferenceMiss
from spend_classifier.models import MappingStatus
from spend_classifier.services.category_service import CategoryRegistry, CategorySnapshot
from spend_classifier.services.external_mapping_service import (
    ExternalTaxonomyMapper,
    TaxonomySource,
    suggest_category_name,
)

PFC = TaxonomySource.PERSONAL_FINANCE_CATEGORY


@pytest.mark.parametrize(
    "value, expected",
    [
        ("FOOD_AND_DRINK_COFFEE", "Restaurants"),
        ("GROCERIES", "Groceries"),
        ("TRANSPORTATION_GAS", "Gas"),
        ("Taxi", "Transportation"),
        ("GENERAL_MERCHANDISE_ELECTRONICS", "Shopping"),
        ("Airlines and Aviation Services", "Travel"),
        ("MEDICAL_PHARMACIES_AND_SUPPLEMENTS", "Healthcare"),
        ("RENT_AND_UTILITIES_INTERNET", "Bills & Utilities"),
        ("INCOME_WAGES", "Income"),
        ("TRANSFER_OUT_ACCOUNT_TRANSFER", "Transfer"),
        ("PERSONAL_CARE_HAIR_AND_BEAUTY", "Personal Care"),
        ("Something Unheard Of", "Other"),
    ],
)
def test_heuristic_keywords(value, expected):
    assert suggest_category_name(value) == expected


def test_heuristic_needs_a_value():
    assert suggest_category_name("") is None
    assert suggest_category_name(None) is None


@pytest.fixture
async def snapshot(repository, categories):
    return await CategoryRegistry(repository).snapshot()


@pytest.mark.asyncio
async def test_unseen_value_creates_pending_row(repository, categories, snapshot):
    mapper = ExternalTaxonomyMapper(repository)

    hit = await mapper.resolve(["FOOD_AND_DRINK_COFFEE"], PFC, snapshot)

    assert hit.category == "Restaurants"
    assert hit.confidence == 50
    assert not hit.approved
    pending = await mapper.list_pending()
    assert [(p.external_category, p.source, p.user_category_id) for p in pending] == [
        ("FOOD_AND_DRINK_COFFEE", PFC.value, categories["Restaurants"])
    ]


@pytest.mark.asyncio
async def test_pending_row_is_never_applied(repository, categories, snapshot):
    mapper = ExternalTaxonomyMapper(repository)
    await repository.upsert_external_mapping(
        "FOOD_AND_DRINK_COFFEE", PFC.value, categories["Travel"], MappingStatus.PENDING.value, 50
    )

    hit = await mapper.resolve(["FOOD_AND_DRINK_COFFEE"], PFC, snapshot)

    assert hit.category == "Restaurants"
    assert hit.confidence == 50
    assert len(await mapper.list_pending()) == 1


@pytest.mark.asyncio
async def test_approved_and_unmapped_rows_apply_at_70(repository, categories, snapshot):
    mapper = ExternalTaxonomyMapper(repository)
    await mapper.approve("FOOD_AND_DRINK_COFFEE", PFC, categories["Groceries"])
    await mapper.mark_unmapped("Coffee Shop", TaxonomySource.LEGACY_CATEGORY, categories["Restaurants"])

    approved = await mapper.resolve(["FOOD_AND_DRINK_COFFEE"], PFC, snapshot)
    unmapped = await mapper.resolve(["Coffee Shop"], TaxonomySource.LEGACY_CATEGORY, snapshot)

    assert (approved.category, approved.confidence, approved.approved) == ("Groceries", 70, True)
    assert (unmapped.category, unmapped.confidence) == ("Restaurants", 70)


@pytest.mark.asyncio
async def test_mappings_are_keyed_by_source(repository, categories, snapshot):
    mapper = ExternalTaxonomyMapper(repository)
    await mapper.approve("Travel", TaxonomySource.LEGACY_CATEGORY, categories["Transportation"])

    hit = await mapper.resolve(["Travel"], PFC, snapshot)

    assert hit.category == "Travel"
    assert hit.confidence == 50


@pytest.mark.asyncio
async def test_less_specific_approved_value_wins_over_heuristic(repository, categories, snapshot):
    mapper = ExternalTaxonomyMapper(repository)
    await mapper.approve("FOOD_AND_DRINK", PFC, categories["Groceries"])

    hit = await mapper.resolve(["FOOD_AND_DRINK_OTHER", "FOOD_AND_DRINK"], PFC, snapshot)

    assert hit.category == "Groceries"
    assert hit.confidence == 70
    assert hit.external_category == "FOOD_AND_DRINK"


@pytest.mark.asyncio
async def test_rejected_value_yields_nothing(repository, categories, snapshot):
    mapper = ExternalTaxonomyMapper(repository)
    await mapper.resolve(["TRAVEL_FLIGHTS"], PFC, snapshot)
    await mapper.reject("TRAVEL_FLIGHTS", PFC)

    assert await mapper.resolve(["TRAVEL_FLIGHTS"], PFC, snapshot) is None
    with pytest.raises(NotFoundError):
        await mapper.reject("NEVER_SEEN", PFC)


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(repository, categories, snapshot):
    mapper = ExternalTaxonomyMapper(repository)

    hit = await mapper.resolve(["ENTERTAINMENT_MUSIC"], PFC, snapshot, learn=False)

    assert hit.category == "Entertainment"
    assert await mapper.list_mappings() == []


@pytest.mark.asyncio
async def test_deleted_target_is_a_reference_miss(repository, categories):
    mapper = ExternalTaxonomyMapper(repository)
    doomed = await repository.create_category("Coffee", None, {})
    await mapper.mark_unmapped("COFFEE", PFC, doomed.id)
    # Snapshot taken without the category, as if it vanished mid-flight
    snapshot = await CategoryRegistry(repository).snapshot()
    snapshot = CategorySnapshot([o for o in snapshot.options if o.id != doomed.id])

    with pytest.raises(ReferenceMiss):
        await mapper.lookup("COFFEE", PFC, snapshot)

    hit = await mapper.resolve(["COFFEE"], PFC, snapshot)
    assert hit.category == "Restaurants"
    assert hit.confidence == 50


@pytest.mark.asyncio
async def test_approve_requires_existing_category(repository, categories):
    mapper = ExternalTaxonomyMapper(repository)
    with pytest.raises(NotFoundError):
        await mapper.approve("GROCERIES", PFC, 424242)


@pytest.mark.asyncio
async def test_item_category_table(repository, categories):
    mapper = ExternalTaxonomyMapper(repository)
    snapshot = await CategoryRegistry(repository).snapshot(items_only=True)

    electronics = await mapper.map_item_category("Electronics", snapshot)
    assert (electronics.category, electronics.confidence) == ("Shopping", 70)
    assert (await mapper.map_item_category("Automotive", snapshot)).category == "Auto & Transport"
    assert await mapper.map_item_category("Widgets", snapshot) is None
    assert await mapper.map_item_category(None, snapshot) is None


@pytest.mark.asyncio
async def test_item_category_reviewed_mapping_overrides_table(repository, categories):
    mapper = ExternalTaxonomyMapper(repository)
    await mapper.approve("Electronics", TaxonomySource.ITEM_CATEGORY, categories["Entertainment"])
    snapshot = await CategoryRegistry(repository).snapshot(items_only=True)

    hit = await mapper.map_item_category("Electronics", snapshot)
    assert hit.category == "Entertainment"
