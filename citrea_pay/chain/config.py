"""
Static configuration for the Citrea network and the fixed sweep contract.

Single source of truth for:
- Chain id and fallback RPC endpoints
- Minimal ABIs used by the watcher (ERC-20 Transfer event, balanceOf, sweep)
"""

from dataclasses import dataclass, field
from typing import Dict, List


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    chain_id: int
    rpc_urls: List[str] = field(default_factory=list)


CITREA_TESTNET = NetworkConfig(
    name="citrea-testnet",
    chain_id=5115,
    rpc_urls=[
        "https://rpc.testnet.citrea.xyz",
    ],
)


# keccak("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


ERC20_ABI: List[Dict] = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]


# Delegated code installed on each receiving address. `sweep` moves the full
# balance of every listed token from the delegating account to `to`.
SWEEPER_ABI: List[Dict] = [
    {
        "inputs": [
            {"name": "tokens", "type": "address[]"},
            {"name": "to", "type": "address"},
        ],
        "name": "sweep",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]
