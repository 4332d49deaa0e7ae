"""
Unit tests for chain/log_decoder.py.

Logs are built in both shapes the transports deliver: JSON-RPC dicts with
hex strings (eth_subscribe) and web3.py-style dicts with HexBytes (polling).
"""

from __future__ import annotations

from eth_abi import encode as abi_encode
from hexbytes import HexBytes

from chain.log_decoder import decode_swap_log
from conftest import AMOUNT0, AMOUNT1, POOL, SQRT_PRICE, TX, pad_address
from shared.constants import V3_SWAP_TOPIC

LIQUIDITY = 5_123_456_789_012_345
TICK = -197_000
ROUTER = "0x2626664c2603336E57B271c5C0b26F421741e481"


def _swap_data() -> bytes:
    return abi_encode(
        ["int256", "int256", "uint160", "uint128", "int24"],
        [AMOUNT0, AMOUNT1, SQRT_PRICE, LIQUIDITY, TICK],
    )


def _rpc_log(**overrides) -> dict:
    log = {
        "address": POOL,
        "topics": [V3_SWAP_TOPIC, pad_address(ROUTER), pad_address(ROUTER)],
        "data": "0x" + _swap_data().hex(),
        "transactionHash": TX,
        "blockNumber": "0x1a2b3c",
        "logIndex": "0x5",
    }
    log.update(overrides)
    return log


class TestDecodeSwapLog:
    def test_decodes_json_rpc_log(self):
        swap = decode_swap_log(_rpc_log())

        assert swap is not None
        assert swap.amount0 == AMOUNT0
        assert swap.amount1 == AMOUNT1
        assert swap.sqrt_price_x96 == SQRT_PRICE
        assert swap.liquidity == LIQUIDITY
        assert swap.tick == TICK
        assert swap.tx_hash == TX
        assert swap.pool_address == POOL
        assert swap.block_number == 0x1A2B3C
        assert swap.log_index == 5

    def test_decodes_web3_style_log(self):
        log = {
            "address": "0xd0b53D9277642d899DF5C87A3966A349A798F224",
            "topics": [HexBytes(V3_SWAP_TOPIC), HexBytes(pad_address(ROUTER))],
            "data": HexBytes(_swap_data()),
            "transactionHash": HexBytes(TX),
            "blockNumber": 1715004,
            "logIndex": 12,
        }
        swap = decode_swap_log(log)

        assert swap is not None
        assert swap.amount1 == AMOUNT1
        assert swap.tx_hash == TX
        assert swap.pool_address == POOL
        assert swap.block_number == 1715004
        assert swap.log_index == 12

    def test_negative_amounts_preserved(self):
        swap = decode_swap_log(_rpc_log())
        assert swap.amount1 < 0
        assert swap.tick < 0

    def test_wrong_topic_returns_none(self):
        log = _rpc_log(topics=["0x" + "00" * 32])
        assert decode_swap_log(log) is None

    def test_no_topics_returns_none(self):
        assert decode_swap_log(_rpc_log(topics=[])) is None

    def test_truncated_data_returns_none(self):
        assert decode_swap_log(_rpc_log(data="0x" + "00" * 40)) is None

    def test_reorged_log_returns_none(self):
        assert decode_swap_log(_rpc_log(removed=True)) is None

    def test_not_removed_flag_still_decodes(self):
        assert decode_swap_log(_rpc_log(removed=False)) is not None

    def test_malformed_block_number_returns_none(self):
        assert decode_swap_log(_rpc_log(blockNumber="0xzz")) is None
        assert decode_swap_log(_rpc_log(logIndex=[5])) is None

    def test_non_hex_data_returns_none(self):
        assert decode_swap_log(_rpc_log(data="0xzz")) is None
