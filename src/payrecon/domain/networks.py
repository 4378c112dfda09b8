from __future__ import annotations

from enum import StrEnum


class Network(StrEnum):
    TRC20 = "TRC20"
    BEP20 = "BEP20"
    ERC20 = "ERC20"
    POLYGON = "POLYGON"
    ARBITRUM = "ARBITRUM"


class Token(StrEnum):
    USDT = "USDT"
    USDC = "USDC"


# Circle discontinued USDC on Tron; every EVM network carries both.
VALID_NETWORK_TOKEN: dict[Network, tuple[Token, ...]] = {
    Network.TRC20: (Token.USDT,),
    Network.BEP20: (Token.USDT, Token.USDC),
    Network.ERC20: (Token.USDT, Token.USDC),
    Network.POLYGON: (Token.USDT, Token.USDC),
    Network.ARBITRUM: (Token.USDT, Token.USDC),
}

NETWORK_LABELS: dict[Network, str] = {
    Network.TRC20: "TRON (TRC20)",
    Network.BEP20: "BNB Smart Chain (BEP20)",
    Network.ERC20: "Ethereum (ERC20)",
    Network.POLYGON: "Polygon",
    Network.ARBITRUM: "Arbitrum",
}

NETWORK_EXPLORER_TX: dict[Network, str] = {
    Network.TRC20: "https://tronscan.org/#/transaction/",
    Network.BEP20: "https://bscscan.com/tx/",
    Network.ERC20: "https://etherscan.io/tx/",
    Network.POLYGON: "https://polygonscan.com/tx/",
    Network.ARBITRUM: "https://arbiscan.io/tx/",
}


def parse_network(value: object) -> Network | None:
    if value is None:
        return None
    candidate = str(value).strip().upper()
    try:
        return Network(candidate)
    except ValueError:
        return None


def parse_token(value: object) -> Token | None:
    if value is None:
        return None
    candidate = str(value).strip().upper()
    try:
        return Token(candidate)
    except ValueError:
        return None


def is_valid_network_token(network: Network, token: Token) -> bool:
    return token in VALID_NETWORK_TOKEN.get(network, ())


def explorer_tx_url(network: object, tx_hash: str | None) -> str | None:
    """Return the block explorer link for ``tx_hash``, or the bare hash for unknown networks."""
    if not tx_hash:
        return None
    resolved = parse_network(network)
    if resolved is None:
        return tx_hash
    return f"{NETWORK_EXPLORER_TX[resolved]}{tx_hash}"
