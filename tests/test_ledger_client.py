"""
Tests for the ledger clients.

The in-memory client is the contract model every other test leans on, so
its reverts are pinned here. The JSON-RPC client is exercised against an
httpx.MockTransport gateway.
"""

import json
from decimal import Decimal

import httpx
import pytest

from certchain.core import (
    Hasher,
    InMemoryLedgerClient,
    JsonRpcLedgerClient,
    LedgerConfig,
    create_ledger_client,
)
from certchain.core.errors import LedgerError, LedgerUnavailable, NotFound, RejectedByLedger
from certchain.schemas import (
    AuditAction,
    CertificateRecord,
    TransactionDescriptor,
    TransactionKind,
)

ISSUER = "0xIssuer0000000000000000000000000000000001"


def make_record(student_id="S1", version=1, timestamp=1772355600, cgpa="3.85"):
    cert_hash = Hasher.certificate_hash(
        student_id, "Ada Lovelace", "BSc - Computer Science", cgpa, version, timestamp
    )
    return CertificateRecord(
        cert_hash=cert_hash,
        student_id=student_id,
        student_name="Ada Lovelace",
        degree="BSc",
        program="Computer Science",
        cgpa=Decimal(cgpa),
        issuing_authority="University of Example",
        version=version,
        issuer=ISSUER,
        signature="c2lnbmF0dXJl",
        issuance_timestamp=timestamp,
    )


def issue_txn(record):
    return TransactionDescriptor(
        kind=TransactionKind.ISSUE, cert_hash=record.cert_hash, actor=ISSUER, record=record
    )


def status_txn(kind, cert_hash):
    return TransactionDescriptor(kind=kind, cert_hash=cert_hash, actor=ISSUER)


class TestInMemoryLedger:

    @pytest.mark.asyncio
    async def test_issue_and_read_back(self, ledger):
        record = make_record()
        receipt = await ledger.submit(issue_txn(record))

        assert receipt.block_ordinal == 1
        assert receipt.tx_id.startswith("0x") and len(receipt.tx_id) == 66

        stored = await ledger.get_record("0x" + record.cert_hash.upper())
        assert stored.cert_hash == record.cert_hash
        assert stored.is_revoked is False
        assert await ledger.get_latest_version("S1") == 1
        assert await ledger.get_version_hashes("S1") == [record.cert_hash]

    @pytest.mark.asyncio
    async def test_each_transaction_is_its_own_block(self, ledger):
        record = make_record()
        r1 = await ledger.submit(issue_txn(record))
        r2 = await ledger.submit(status_txn(TransactionKind.REVOKE, record.cert_hash))
        r3 = await ledger.submit(status_txn(TransactionKind.REACTIVATE, record.cert_hash))
        assert [r1.block_ordinal, r2.block_ordinal, r3.block_ordinal] == [1, 2, 3]
        assert ledger.block_height == 3

    @pytest.mark.asyncio
    async def test_duplicate_hash_reverts(self, ledger):
        record = make_record()
        await ledger.submit(issue_txn(record))
        with pytest.raises(RejectedByLedger, match="already exists"):
            await ledger.submit(issue_txn(record))

    @pytest.mark.asyncio
    async def test_version_gap_reverts(self, ledger):
        with pytest.raises(RejectedByLedger, match="expected 1, got 2"):
            await ledger.submit(issue_txn(make_record(version=2)))

    @pytest.mark.asyncio
    async def test_revoke_unknown_reverts(self, ledger):
        with pytest.raises(RejectedByLedger, match="does not exist"):
            await ledger.submit(status_txn(TransactionKind.REVOKE, "ab" * 32))

    @pytest.mark.asyncio
    async def test_double_revoke_reverts(self, ledger):
        record = make_record()
        await ledger.submit(issue_txn(record))
        await ledger.submit(status_txn(TransactionKind.REVOKE, record.cert_hash))
        with pytest.raises(RejectedByLedger, match="already revoked"):
            await ledger.submit(status_txn(TransactionKind.REVOKE, record.cert_hash))

    @pytest.mark.asyncio
    async def test_reactivate_active_reverts(self, ledger):
        record = make_record()
        await ledger.submit(issue_txn(record))
        with pytest.raises(RejectedByLedger, match="not revoked"):
            await ledger.submit(status_txn(TransactionKind.REACTIVATE, record.cert_hash))

    @pytest.mark.asyncio
    async def test_rejected_transaction_mines_nothing(self, ledger):
        with pytest.raises(RejectedByLedger):
            await ledger.submit(issue_txn(make_record(version=3)))
        assert ledger.block_height == 0

    @pytest.mark.asyncio
    async def test_unknown_record_not_found(self, ledger):
        with pytest.raises(NotFound):
            await ledger.get_record("cd" * 32)
        assert await ledger.get_latest_version("nobody") == 0
        assert await ledger.get_version_hashes("nobody") == []

    @pytest.mark.asyncio
    async def test_query_events_filters(self, ledger):
        record = make_record()
        await ledger.submit(issue_txn(record))
        await ledger.submit(status_txn(TransactionKind.REVOKE, record.cert_hash))

        issued = await ledger.query_events(AuditAction.ISSUED)
        assert len(issued) == 1
        assert issued[0].student_id == "S1" and issued[0].version == 1

        assert len(await ledger.query_events(AuditAction.REVOKED, cert_hash=record.cert_hash)) == 1
        assert await ledger.query_events(AuditAction.REVOKED, cert_hash="ef" * 32) == []
        # Actor match is case-insensitive
        assert len(await ledger.query_events(AuditAction.ISSUED, actor=ISSUER.lower())) == 1
        assert await ledger.query_events(AuditAction.ISSUED, actor="0xsomeoneelse") == []

    @pytest.mark.asyncio
    async def test_block_timestamps_follow_clock(self, ledger, clock):
        first = make_record()
        await ledger.submit(issue_txn(first))
        clock.advance(minutes=5)
        await ledger.submit(status_txn(TransactionKind.REVOKE, first.cert_hash))

        t1 = await ledger.get_block_timestamp(1)
        t2 = await ledger.get_block_timestamp(2)
        assert (t2 - t1).total_seconds() == 300
        assert await ledger.get_block_timestamp(3) is None
        assert await ledger.get_block_timestamp(0) is None

    @pytest.mark.asyncio
    async def test_health(self, ledger):
        await ledger.submit(issue_txn(make_record()))
        assert await ledger.health() == {"driver": "memory", "block_height": 1}


def rpc_gateway(handler):
    """Build a JsonRpcLedgerClient whose gateway is a python function."""

    def transport_handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        outcome = handler(body["method"], body["params"])
        if isinstance(outcome, httpx.Response):
            return outcome
        if isinstance(outcome, dict) and "error" in outcome:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **outcome})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": outcome})

    return JsonRpcLedgerClient(
        "http://ledger.test/rpc", transport=httpx.MockTransport(transport_handler)
    )


def wire_record(record, revoked=False):
    return {
        "certHash": "0x" + record.cert_hash,
        "studentId": record.student_id,
        "studentName": record.student_name,
        "degree": record.degree,
        "program": record.program,
        "cgpa": record.cgpa_scaled,
        "issuingAuthority": record.issuing_authority,
        "version": record.version,
        "issuer": record.issuer,
        "signature": record.signature,
        "issuanceTimestamp": record.issuance_timestamp,
        "isRevoked": revoked,
    }


class TestJsonRpcLedger:

    @pytest.mark.asyncio
    async def test_submit_issue_sends_wire_record(self):
        seen = {}

        def handler(method, params):
            seen["method"] = method
            seen["params"] = params
            return {"txHash": "0xfeed", "blockNumber": "7"}

        client = rpc_gateway(handler)
        record = make_record()
        receipt = await client.submit(issue_txn(record))
        await client.close()

        assert receipt.tx_id == "0xfeed"
        assert receipt.block_ordinal == 7
        assert seen["method"] == "cert_submit"
        sent = seen["params"][0]
        assert sent["kind"] == "issue"
        assert sent["certHash"] == "0x" + record.cert_hash
        assert sent["from"] == ISSUER
        assert sent["record"]["cgpa"] == 385

    @pytest.mark.asyncio
    async def test_submit_status_change_has_no_record(self):
        seen = {}

        def handler(method, params):
            seen["params"] = params
            return {"txHash": "0xbeef", "blockNumber": 2}

        client = rpc_gateway(handler)
        await client.submit(status_txn(TransactionKind.REVOKE, "ab" * 32))
        await client.close()
        assert "record" not in seen["params"][0]
        assert seen["params"][0]["kind"] == "revoke"

    @pytest.mark.asyncio
    async def test_get_record_decodes_wire(self):
        record = make_record()
        client = rpc_gateway(lambda method, params: wire_record(record, revoked=True))
        fetched = await client.get_record(record.cert_hash)
        await client.close()

        assert fetched.cert_hash == record.cert_hash
        assert fetched.cgpa == Decimal("3.85")
        assert fetched.is_revoked is True

    @pytest.mark.asyncio
    async def test_null_record_is_not_found(self):
        client = rpc_gateway(lambda method, params: None)
        with pytest.raises(NotFound):
            await client.get_record("ab" * 32)
        await client.close()

    @pytest.mark.asyncio
    async def test_revert_maps_to_rejected(self):
        client = rpc_gateway(lambda m, p: {
            "error": {"code": 3, "message": "execution reverted", "data": {"reason": "Certificate already revoked"}}
        })
        with pytest.raises(RejectedByLedger) as exc_info:
            await client.submit(status_txn(TransactionKind.REVOKE, "ab" * 32))
        await client.close()
        assert exc_info.value.reason == "Certificate already revoked"

    @pytest.mark.asyncio
    async def test_other_rpc_error_is_ledger_error(self):
        client = rpc_gateway(lambda m, p: {"error": {"code": -32601, "message": "method unknown"}})
        with pytest.raises(LedgerError) as exc_info:
            await client.get_latest_version("S1")
        await client.close()
        assert not isinstance(exc_info.value, (LedgerUnavailable, RejectedByLedger))

    @pytest.mark.asyncio
    async def test_gateway_5xx_is_unavailable(self):
        client = rpc_gateway(lambda m, p: httpx.Response(503))
        with pytest.raises(LedgerUnavailable) as exc_info:
            await client.get_latest_version("S1")
        await client.close()
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_gateway_4xx_is_ledger_error(self):
        client = rpc_gateway(lambda m, p: httpx.Response(404))
        with pytest.raises(LedgerError) as exc_info:
            await client.get_latest_version("S1")
        await client.close()
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_connection_failure_is_unavailable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = JsonRpcLedgerClient("http://ledger.test/rpc", transport=httpx.MockTransport(refuse))
        with pytest.raises(LedgerUnavailable):
            await client.get_version_hashes("S1")
        await client.close()

    @pytest.mark.asyncio
    async def test_query_events_and_timestamps(self):
        def handler(method, params):
            if method == "cert_queryEvents":
                assert params[0] == {"kind": "REVOKED", "actor": ISSUER}
                return [{
                    "kind": "REVOKED",
                    "certHash": "0x" + "AB" * 32,
                    "actor": ISSUER,
                    "blockNumber": 4,
                    "txHash": "0x01",
                }]
            if method == "chain_getBlockTimestamp":
                return 1772355600 if params[0] == 4 else None
            raise AssertionError(method)

        client = rpc_gateway(handler)
        events = await client.query_events(AuditAction.REVOKED, actor=ISSUER)
        ts = await client.get_block_timestamp(4)
        missing = await client.get_block_timestamp(5)
        await client.close()

        assert events[0].cert_hash == "ab" * 32
        assert events[0].block_ordinal == 4
        assert events[0].version is None
        assert ts.timestamp() == 1772355600
        assert missing is None

    @pytest.mark.asyncio
    async def test_version_reads(self):
        def handler(method, params):
            if method == "cert_getLatestVersion":
                return 2
            return ["0x" + "AA" * 32, "0x" + "BB" * 32]

        client = rpc_gateway(handler)
        assert await client.get_latest_version("S1") == 2
        assert await client.get_version_hashes("S1") == ["aa" * 32, "bb" * 32]
        await client.close()

    @pytest.mark.asyncio
    async def test_health(self):
        client = rpc_gateway(lambda m, p: 42)
        assert await client.health() == {"driver": "jsonrpc", "block_height": 42}
        await client.close()


class TestLedgerFactory:

    def test_memory_by_default(self, monkeypatch):
        monkeypatch.delenv("CERTCHAIN_LEDGER_DRIVER", raising=False)
        assert isinstance(create_ledger_client(), InMemoryLedgerClient)

    def test_jsonrpc_from_env(self, monkeypatch):
        monkeypatch.setenv("CERTCHAIN_LEDGER_DRIVER", "JSONRPC")
        monkeypatch.setenv("CERTCHAIN_LEDGER_RPC_URL", "http://gateway:8545")
        monkeypatch.setenv("CERTCHAIN_LEDGER_TIMEOUT", "3.5")
        config = LedgerConfig.from_env()
        assert config.driver == "jsonrpc"
        assert config.timeout == 3.5
        assert isinstance(create_ledger_client(config), JsonRpcLedgerClient)

    def test_unknown_driver(self):
        with pytest.raises(ValueError, match="Unknown ledger driver"):
            create_ledger_client(LedgerConfig(driver="carrier-pigeon"))
