from chain.chain_client import (
    ChainClient,
    ChainClientError,
    HttpChainClient,
    MultiEndpointClient,
    NoLiveEndpointError,
    SocketChainClient,
)
from chain.rpc_resolver import RpcResolver

__all__ = [
    "ChainClient",
    "ChainClientError",
    "HttpChainClient",
    "MultiEndpointClient",
    "NoLiveEndpointError",
    "RpcResolver",
    "SocketChainClient",
]
