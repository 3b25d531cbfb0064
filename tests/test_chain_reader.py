"""Tests for deposit log reading and strict decoding."""

from dataclasses import replace
from decimal import Decimal

import pytest
from eth_abi import encode

from chain_reader import ChainEventReader, MAX_LEDGER_AMOUNT, event_topic, scale_amount
from conftest import ALICE, POLYGON_VAULT, FakeChain, make_deposit_log, make_tx_hash
from errors import ChainReadError
from models import DepositEvent, MalformedLog


@pytest.fixture
def chain():
    return FakeChain("polygon", head=2000)


@pytest.fixture
def reader(polygon, chain):
    return ChainEventReader(polygon, chain, block_batch_size=100)


class TestScaleAmount:
    """Tests for raw amount scaling"""

    def test_six_decimals(self):
        """50 USDT on a 6-decimal token"""
        assert scale_amount(50_000_000, 6) == Decimal("50")

    def test_eighteen_decimals_keeps_precision(self):
        """Sub-cent amounts on 18-decimal tokens are exact"""
        assert scale_amount(10 ** 12, 18) == Decimal("0.000001")
        assert scale_amount(123456789012345678901, 18) == Decimal("123.456789012345678901")

    def test_zero_decimals(self):
        """Tokens without decimals are unscaled"""
        assert scale_amount(42, 0) == Decimal("42")


class TestEventTopic:
    def test_topic_format(self):
        """Topic is a 0x-prefixed keccak hash"""
        topic = event_topic("DepositMade(address,uint256,uint256,uint256)")
        assert topic.startswith("0x")
        assert len(topic) == 66

    def test_signature_changes_topic(self):
        """Different signatures give different topics"""
        assert event_topic("DepositMade(address,uint256)") != event_topic("DepositMade(address,uint256,uint256,uint256)")


class TestDecodeLog:
    """Tests for strict log decoding"""

    def test_valid_log(self, reader):
        """A well-formed log decodes to a DepositEvent"""
        log = make_deposit_log(POLYGON_VAULT, ALICE, 50_000_000, 1234, log_index=3, to_hot=40_000_000,
                               to_cold=10_000_000)

        event = reader.decode_log(log)

        assert isinstance(event, DepositEvent)
        assert event.user == ALICE
        assert event.amount_raw == 50_000_000
        assert event.block_number == 1234
        assert event.log_index == 3
        assert event.tx_hash == make_tx_hash(1234, 3)
        assert event.to_hot_wallet == 40_000_000
        assert event.to_cold_wallet == 10_000_000

    def test_hex_string_fields(self, reader):
        """Topics and data given as hex strings decode the same as bytes"""
        log = make_deposit_log(POLYGON_VAULT, ALICE, 1_000_000, 10)
        log["topics"] = ["0x" + t.hex() for t in log["topics"]]
        log["data"] = "0x" + log["data"].hex()
        log["transactionHash"] = "0x" + log["transactionHash"].hex()

        event = reader.decode_log(log)

        assert isinstance(event, DepositEvent)
        assert event.amount_raw == 1_000_000

    def test_amount_only_data(self, reader):
        """A single data word is enough; wallet split is then unknown"""
        log = make_deposit_log(POLYGON_VAULT, ALICE, 1_000_000, 10)
        log["data"] = encode(["uint256"], [1_000_000])

        event = reader.decode_log(log)

        assert event.amount_raw == 1_000_000
        assert event.to_hot_wallet is None

    def test_checksummed_contract_address(self, reader):
        """The emitting address is compared case-insensitively"""
        log = make_deposit_log(POLYGON_VAULT.upper().replace("0X", "0x"), ALICE, 1_000_000, 10)
        assert isinstance(reader.decode_log(log), DepositEvent)

    def test_removed_log_is_ignored(self, reader):
        """Logs dropped by a reorg are neither events nor malformed"""
        log = make_deposit_log(POLYGON_VAULT, ALICE, 1_000_000, 10)
        log["removed"] = True
        assert reader.decode_log(log) is None

    @pytest.mark.parametrize("mutate,reason", [
        (lambda log: log.update(transactionHash=b"\x01" * 4), "transaction hash"),
        (lambda log: log.update(blockNumber=None), "block number"),
        (lambda log: log.update(blockNumber=-1), "block number"),
        (lambda log: log.update(logIndex="3"), "log index"),
        (lambda log: log.update(address="0x" + "ee" * 20), "unexpected contract"),
        (lambda log: log["topics"].__setitem__(0, b"\x00" * 32), "topic0"),
        (lambda log: log["topics"].append(b"\x00" * 32), "indexed topic"),
        (lambda log: log["topics"].__setitem__(1, b"\xff" * 32), "zero-padded"),
        (lambda log: log.update(data=b""), "multiple of 32"),
        (lambda log: log.update(data=b"\x00" * 33), "multiple of 32"),
        (lambda log: log.update(data=encode(["uint256"], [0])), "not positive"),
    ])
    def test_malformed_logs(self, reader, mutate, reason):
        """Each structural problem yields a MalformedLog naming it"""
        log = make_deposit_log(POLYGON_VAULT, ALICE, 1_000_000, 10)
        mutate(log)

        result = reader.decode_log(log)

        assert isinstance(result, MalformedLog)
        assert reason in result.reason

    def test_amount_beyond_ledger_precision(self, reader):
        """Amounts that do not fit the ledger are rejected"""
        too_large = int(MAX_LEDGER_AMOUNT) * 10 ** 6
        log = make_deposit_log(POLYGON_VAULT, ALICE, too_large, 10)

        result = reader.decode_log(log)

        assert isinstance(result, MalformedLog)
        assert "precision" in result.reason

    def test_amount_below_ledger_scale(self, polygon, chain):
        """A 24-decimal amount that would round at 18 places is rejected, an exact one is kept"""
        reader = ChainEventReader(replace(polygon, token_decimals=24), chain)

        rounded = reader.decode_log(make_deposit_log(POLYGON_VAULT, ALICE, 5 * 10 ** 5, 10))
        exact = reader.decode_log(make_deposit_log(POLYGON_VAULT, ALICE, 10 ** 6, 11, tx_hash=make_tx_hash(11)))

        assert isinstance(rounded, MalformedLog)
        assert "18 decimal places" in rounded.reason
        assert isinstance(exact, DepositEvent)
        assert exact.amount_raw == 10 ** 6

    def test_largest_ledger_amount(self, reader):
        """Twenty integer digits still decode"""
        largest = (int(MAX_LEDGER_AMOUNT) - 1) * 10 ** 6 + 1
        assert isinstance(reader.decode_log(make_deposit_log(POLYGON_VAULT, ALICE, largest, 10)), DepositEvent)

    def test_malformed_log_keeps_raw_json(self, reader):
        """The quarantined payload is JSON with hex-encoded bytes"""
        log = make_deposit_log(POLYGON_VAULT, ALICE, 1_000_000, 10)
        log["data"] = b"\x00" * 33

        result = reader.decode_log(log)

        assert result.block_number == 10
        assert '"blockNumber": 10' in result.raw_json()
        assert "0x" + "00" * 33 in result.raw_json()


class TestReadWindows:
    """Tests for windowed log reads"""

    def test_fetch_events_sorted(self, reader, chain):
        """Events come back ordered by block then log index"""
        chain.add_log(make_deposit_log(POLYGON_VAULT, ALICE, 3, 150, log_index=1))
        chain.add_log(make_deposit_log(POLYGON_VAULT, ALICE, 1, 120, log_index=0))
        chain.add_log(make_deposit_log(POLYGON_VAULT, ALICE, 2, 150, log_index=0))

        events = reader.fetch_events(100, 199)

        assert [(e.block_number, e.log_index) for e in events] == [(120, 0), (150, 0), (150, 1)]

    def test_fetch_events_drops_malformed(self, reader, chain):
        """fetch_events returns only well-formed deposits"""
        chain.add_log(make_deposit_log(POLYGON_VAULT, ALICE, 1, 120))
        broken = chain.add_log(make_deposit_log(POLYGON_VAULT, ALICE, 1, 130))
        broken["data"] = b""

        assert len(reader.fetch_events(100, 199)) == 1

    def test_windows_respect_batch_size(self, reader, chain):
        """The range is read in inclusive windows of at most the batch size"""
        windows = [(start, end) for start, end, _ in reader.iter_windows(1, 250)]

        assert windows == [(1, 100), (101, 200), (201, 250)]
        assert chain.get_logs_calls == windows

    def test_empty_range(self, reader, chain):
        """A range with from > to reads nothing"""
        assert reader.fetch_events(10, 9) == []
        assert chain.get_logs_calls == []

    def test_rpc_failure_is_wrapped(self, reader, chain):
        """RPC errors surface as ChainReadError with the failed range"""
        chain.fail_logs = True

        with pytest.raises(ChainReadError) as exc_info:
            reader.fetch_events(1, 50)

        assert exc_info.value.network_id == "polygon"
        assert exc_info.value.from_block == 1
        assert exc_info.value.to_block == 50

    def test_chain_head(self, reader, chain):
        assert reader.get_chain_head() == 2000

        chain.fail_head = True
        with pytest.raises(ChainReadError):
            reader.get_chain_head()

    def test_invalid_batch_size(self, polygon, chain):
        """Batch size must be positive"""
        with pytest.raises(ValueError):
            ChainEventReader(polygon, chain, block_batch_size=0)
