"""
Chain Event Reader

Reads DepositMade logs for one network's vault contract over an inclusive
block range, in windows of at most ``block_batch_size`` blocks.

RPC responses are loosely typed, so every log goes through a strict decode
step: a log either becomes a DepositEvent or is handed back as a MalformedLog
with the reason it was rejected.
"""

import logging
from decimal import Decimal, localcontext
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from eth_abi import decode
from web3 import Web3

from config_manager import DEFAULT_EVENT_SIGNATURE
from errors import ChainReadError
from models import NetworkConfig, DepositEvent, MalformedLog
from rpc_failover import EVMProviderPool

logger = logging.getLogger(__name__)

WORD_SIZE = 32

# DECIMAL(38,18) leaves 20 integer digits and 18 fractional digits
MAX_LEDGER_AMOUNT = Decimal(10) ** 20
LEDGER_QUANTUM = Decimal(1).scaleb(-18)

DecodedLog = Union[DepositEvent, MalformedLog]


def scale_amount(amount_raw: int, decimals: int) -> Decimal:
    """Convert a raw token amount to its decimal value without float rounding"""
    with localcontext() as ctx:
        ctx.prec = 80
        return Decimal(int(amount_raw)).scaleb(-decimals)


def fits_ledger_scale(amount: Decimal) -> bool:
    """True when the amount has no digits past the ledger's 18 decimal places"""
    with localcontext() as ctx:
        ctx.prec = 80
        return amount == amount.quantize(LEDGER_QUANTUM)


def event_topic(signature: str) -> str:
    return '0x' + bytes(Web3.keccak(text=signature)).hex()


def _to_bytes(value: Any) -> Optional[bytes]:
    """Normalize HexBytes, bytes or hex strings"""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value[:2].lower() == '0x' else value
        try:
            return bytes.fromhex(text)
        except ValueError:
            return None
    return None


def _to_hex(value: Any) -> Optional[str]:
    raw = _to_bytes(value)
    return '0x' + raw.hex() if raw is not None else None


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    if isinstance(value, dict) or hasattr(value, 'items'):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class ChainEventReader:
    def __init__(self, network: NetworkConfig, provider_pool: EVMProviderPool,
                 block_batch_size: int = 2000, event_signature: str = DEFAULT_EVENT_SIGNATURE):
        if block_batch_size < 1:
            raise ValueError("block_batch_size must be at least 1")
        self.network = network
        self.pool = provider_pool
        self.block_batch_size = block_batch_size
        self.event_signature = event_signature
        self.topic0 = event_topic(event_signature)
        self.contract_address = network.contract_address.lower()

    def get_chain_head(self) -> int:
        """Latest block number reported by the network"""
        try:
            return int(self.pool.with_web3(lambda w3: w3.eth.block_number))
        except Exception as e:
            raise ChainReadError(self.network.network_id, f"failed to read chain head: {e}") from e

    def _get_logs(self, from_block: int, to_block: int) -> List[Any]:
        filter_params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": Web3.to_checksum_address(self.contract_address),
            "topics": [self.topic0],
        }
        try:
            return list(self.pool.with_web3(lambda w3: w3.eth.get_logs(filter_params)))
        except Exception as e:
            raise ChainReadError(self.network.network_id, str(e), from_block, to_block) from e

    def iter_windows(self, from_block: int, to_block: int) -> Iterator[Tuple[int, int, List[DecodedLog]]]:
        """Yield (window_start, window_end, decoded logs) in ascending block order"""
        start = from_block
        while start <= to_block:
            end = min(start + self.block_batch_size - 1, to_block)
            raw_logs = self._get_logs(start, end)

            decoded = []
            for raw_log in raw_logs:
                item = self.decode_log(raw_log)
                if item is not None:
                    decoded.append(item)
            decoded.sort(key=lambda item: item.sort_key)

            logger.debug(
                f"[{self.network.network_id}] blocks {start}-{end}: {len(raw_logs)} logs, "
                f"{sum(isinstance(d, DepositEvent) for d in decoded)} deposits"
            )
            yield start, end, decoded
            start = end + 1

    def fetch_events(self, from_block: int, to_block: int) -> List[DepositEvent]:
        """All well-formed deposit events in the inclusive range, ordered by (block, log index)"""
        events: List[DepositEvent] = []
        for _, _, decoded in self.iter_windows(from_block, to_block):
            for item in decoded:
                if isinstance(item, DepositEvent):
                    events.append(item)
                else:
                    logger.warning(f"[{self.network.network_id}] skipping malformed log: {item.reason}")
        return events

    def decode_log(self, raw_log: Any) -> Optional[DecodedLog]:
        """Decode one raw log; None for logs dropped by a reorg"""
        if raw_log.get('removed'):
            logger.debug(f"[{self.network.network_id}] ignoring removed log {raw_log.get('transactionHash')}")
            return None

        tx_hash = _to_hex(raw_log.get('transactionHash'))
        block_number = raw_log.get('blockNumber')
        log_index = raw_log.get('logIndex', 0)

        def malformed(reason: str) -> MalformedLog:
            return MalformedLog(
                reason=reason,
                raw_log=_jsonable(dict(raw_log)),
                tx_hash=tx_hash,
                block_number=block_number if isinstance(block_number, int) else None,
                log_index=log_index if isinstance(log_index, int) else None,
            )

        if tx_hash is None or len(tx_hash) != 66:
            return malformed("missing or invalid transaction hash")
        if not isinstance(block_number, int) or isinstance(block_number, bool) or block_number < 0:
            return malformed("missing or invalid block number")
        if not isinstance(log_index, int) or isinstance(log_index, bool) or log_index < 0:
            return malformed("invalid log index")

        address = _to_hex(raw_log.get('address'))
        if address and address != self.contract_address:
            return malformed(f"log emitted by unexpected contract {address}")

        topics = [_to_bytes(t) for t in (raw_log.get('topics') or [])]
        if not topics or topics[0] is None or '0x' + topics[0].hex() != self.topic0:
            return malformed("topic0 does not match the deposit event signature")
        if len(topics) != 2:
            return malformed(f"expected exactly one indexed topic, got {len(topics) - 1}")
        user_topic = topics[1]
        if user_topic is None or len(user_topic) != WORD_SIZE or any(user_topic[:12]):
            return malformed("indexed user topic is not a zero-padded address")

        data = _to_bytes(raw_log.get('data'))
        if not data or len(data) % WORD_SIZE != 0:
            return malformed("event data is not a non-empty multiple of 32 bytes")

        word_count = len(data) // WORD_SIZE
        try:
            values = decode(['uint256'] * word_count, data)
        except Exception as e:
            return malformed(f"ABI decode failed: {e}")

        amount_raw = int(values[0])
        if amount_raw <= 0:
            return malformed("deposit amount is not positive")
        amount = scale_amount(amount_raw, self.network.token_decimals)
        if amount >= MAX_LEDGER_AMOUNT:
            return malformed("deposit amount exceeds ledger precision")
        if not fits_ledger_scale(amount):
            return malformed("deposit amount has more than 18 decimal places")

        return DepositEvent(
            user='0x' + user_topic[12:].hex(),
            amount_raw=amount_raw,
            tx_hash=tx_hash.lower(),
            block_number=block_number,
            log_index=log_index,
            to_hot_wallet=int(values[1]) if word_count > 1 else None,
            to_cold_wallet=int(values[2]) if word_count > 2 else None,
        )


def build_reader(network: NetworkConfig, config=None) -> ChainEventReader:
    """Create a reader with a provider pool configured from the config manager"""
    if config is None:
        from config_manager import get_config_manager
        config = get_config_manager()

    pool = EVMProviderPool(
        network.rpc_urls,
        request_timeout_s=config.get_rpc_timeout(),
        preference_reset_minutes=config.get_rpc_preference_reset_minutes(),
        label=network.network_id,
    )
    return ChainEventReader(
        network,
        pool,
        block_batch_size=config.get_block_batch_size(),
        event_signature=config.get_event_signature(),
    )
