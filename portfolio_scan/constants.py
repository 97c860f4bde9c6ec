"""
Known Sport.fun (pro.football.fun) deployments on Base.

Kept explicit so unrelated ERC-1155 activity never leaks into a portfolio.
Each deployment pairs one player-share ERC-1155 contract with its AMM pair
contract and its promotion-issuer contract.
"""

from typing import Dict, List, Optional

CHAIN = 'base'
PROTOCOL = 'sportfun'

SHARE_DECIMALS = 18
CURRENCY_DECIMALS = 6
ONE_SHARE = 10 ** SHARE_DECIMALS

BASE_USDC = '0x833589fcd6edb6e08f4c7c32d4f71b54bda02913'

DEPLOYMENTS: List[Dict[str, str]] = [
    {
        'player_token': '0x71c8b0c5148edb0399d1edf9bf0c8c81dea16918',
        'pair': '0x9da1bb4e725acc0d96010b7ce2a7244cda446617',
        'promotions': '0xc21c2d586f1db92eedb67a2fc348f21ed7541965',
        'label': 'sportfun-1',
    },
    {
        'player_token': '0x2eef466e802ab2835ab81be63eebc55167d35b56',
        'pair': '0x4fdce033b9f30019337ddc5cc028dc023580585e',
        'promotions': '0xc98bf3fc49a8a7ad162098ad0bb62268d46dacf9',
        'label': 'sportfun-2',
    },
]

SHARE_CONTRACTS = [d['player_token'] for d in DEPLOYMENTS]
PAIR_CONTRACTS = [d['pair'] for d in DEPLOYMENTS]
PROMOTION_CONTRACTS = [d['promotions'] for d in DEPLOYMENTS]

# pair / promotion contract -> player token contract
PLAYER_TOKEN_BY_PAIR = {d['pair']: d['player_token'] for d in DEPLOYMENTS}
PLAYER_TOKEN_BY_PROMOTIONS = {d['promotions']: d['player_token'] for d in DEPLOYMENTS}
PAIR_BY_PLAYER_TOKEN = {d['player_token']: d['pair'] for d in DEPLOYMENTS}

# topic0 of the events we decode
TOPIC_PLAYER_TOKENS_PURCHASE = '0x687289c2856f43779157318472d0a835253d93a290e03ee79b9e27b0e403493d'
TOPIC_CURRENCY_PURCHASE = '0x2ac32fc1571b5f084cc08aa7b74d280dd7ccf29a3c58d1b42c369291f06a9a46'
TOPIC_PLAYER_SHARES_PROMOTED = '0xdf85ea724d07d95f8a2eee7dd82e4878a451bd282e57e84f96996918b441a6c2'
TOPIC_ERC20_TRANSFER = '0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef'

# Non-indexed fields of the batch events, in ABI order.
# PlayerTokensPurchase(address indexed buyer, address indexed recipient, ...)
# CurrencyPurchase(address indexed seller, address indexed recipient, ...)
PAIR_EVENT_DATA_TYPES = ['uint256[]', 'uint256[]', 'uint256[]', 'uint256[]', 'uint256[]']
# PlayerSharesPromoted(address indexed account, uint256[] ids, uint256[] amounts)
PROMOTION_EVENT_DATA_TYPES = ['uint256[]', 'uint256[]']


def pair_for_player_token(player_token: str) -> Optional[str]:
    return PAIR_BY_PLAYER_TOKEN.get((player_token or '').lower())


def contract_mapping() -> List[Dict[str, str]]:
    """Deployment table for the payload's debug section."""
    return [dict(d) for d in DEPLOYMENTS]
