import deps.pools
from scripts.inspect_disbursements import main, needs_attention
from app.pools.models import DisbursementStatus
from app.pools.errors import UpstreamResourceError
from tests.conftest import LEARNER_1, LEARNER_2, finalized_pool


def test_needs_attention_lists_in_doubt_and_orphans(pools):
    finalized_pool(pools, "P1")
    pools.disbursements.disburse("P1", LEARNER_1, 100, "TX-OK")

    pools.op.fail_next("create_quote", UpstreamResourceError("HTTP 400", http_status=400, retryable=False))
    try:
        pools.disbursements.disburse("P1", LEARNER_2, 100, "TX-ORPHAN")
    except UpstreamResourceError:
        pass

    pools.op.drop_outgoing_response = True
    try:
        pools.disbursements.disburse("P1", LEARNER_1, 100, "TX-DOUBT")
    except UpstreamResourceError:
        pass

    rows = {r["transaction_id"]: r["reason"] for r in needs_attention(pools.store, "P1")}
    assert rows == {"TX-ORPHAN": "orphaned_incoming_payment", "TX-DOUBT": "in_doubt"}


def test_abandon_option_releases_in_doubt_transaction(pools, monkeypatch, capsys):
    finalized_pool(pools, "P1")
    pools.op.drop_outgoing_response = True
    try:
        pools.disbursements.disburse("P1", LEARNER_1, 100, "TX-DOUBT")
    except UpstreamResourceError:
        pass
    assert pools.store.get("P1").disbursed_amount == 100

    monkeypatch.setattr(deps.pools, "get_grant_store", lambda: pools.store)
    monkeypatch.setattr(deps.pools, "get_authorization_client", lambda: pools.op)

    assert main(["P1", "--abandon", "TX-DOUBT", "--reason", "no payment in sender wallet"]) == 0

    assert "abandoned transaction_id=TX-DOUBT" in capsys.readouterr().out
    assert pools.store.get_disbursement("P1", "TX-DOUBT").status == DisbursementStatus.FAILED
    assert pools.store.get("P1").disbursed_amount == 0
