import pytest

from nexo_backend.services.aggregation_engine import AggregationEngine
from nexo_backend.services.errors import StaleAggregateError
from nexo_backend.services.issue_aggregation import IssueContribution


@pytest.mark.asyncio
async def test_two_users_same_issue(issue_store):
    engine = AggregationEngine(issue_store)
    issue_id = issue_store.add_canonical_issue("Housing Affordability", aliases=["rent control"])

    await engine.apply_issue_contribution(issue_id, IssueContribution("I support rent control", 0.8, "high"))
    state = await engine.apply_issue_contribution(
        issue_id, IssueContribution("Rent control hurts landlords", 0.6, "medium")
    )

    stored = issue_store.aggregate_issues[issue_id]
    assert stored == state
    assert stored.total_users == 2
    assert stored.energy_score == pytest.approx(1.16)
    assert stored.consensus_score == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_lost_race_is_retried_without_losing_updates(issue_store):
    engine = AggregationEngine(issue_store, max_retries=5)
    issue_id = issue_store.add_canonical_issue("Climate Action")
    await engine.apply_issue_contribution(issue_id, IssueContribution("urgent", 1.0, "high"))

    issue_store.interleaved_issue_writes = 2
    state = await engine.apply_issue_contribution(issue_id, IssueContribution("urgent", 0.5, "high"))

    # Foreign writers only bumped the version; our contribution landed once.
    assert state.total_users == 2
    assert state.energy_score == pytest.approx(1.5)
    assert state.version == 4


@pytest.mark.asyncio
async def test_concurrent_first_insert_folds_into_winner(issue_store):
    engine = AggregationEngine(issue_store)
    issue_id = issue_store.add_canonical_issue("Drug Policy")

    issue_store.interleaved_issue_writes = 1
    state = await engine.apply_issue_contribution(issue_id, IssueContribution("decriminalise", 0.8, "high"))

    assert state.total_users == 2
    assert state.stance_histogram == {"foreign": 1, "decriminalise": 1}
    assert state.consensus_score == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(issue_store):
    engine = AggregationEngine(issue_store, max_retries=3)
    issue_id = issue_store.add_canonical_issue("Free Speech Online")
    await engine.apply_issue_contribution(issue_id, IssueContribution("a", 0.5, "low"))

    issue_store.interleaved_issue_writes = 3
    with pytest.raises(StaleAggregateError):
        await engine.apply_issue_contribution(issue_id, IssueContribution("b", 0.5, "low"))

    assert issue_store.aggregate_issues[issue_id].total_users == 1


@pytest.mark.asyncio
async def test_connection_pair_order_shares_one_row(issue_store):
    engine = AggregationEngine(issue_store)

    await engine.apply_connection("bbbb", "aaaa")
    state = await engine.apply_connection("aaaa", "bbbb")

    assert list(issue_store.aggregate_connections) == [("aaaa", "bbbb")]
    assert state.total_weight == 2
    assert state.user_count == 2


@pytest.mark.asyncio
async def test_connection_retry_on_lost_race(issue_store):
    engine = AggregationEngine(issue_store)

    issue_store.interleaved_connection_writes = 1
    state = await engine.apply_connection("aaaa", "bbbb")

    assert state.total_weight == 2
    assert state.version == 2
