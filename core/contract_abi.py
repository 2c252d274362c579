"""
Ledger ABI fragments.

Only the functions and events the settlement engine touches. getTokenInfo
returns a flat positional tuple whose order is fixed by TOKEN_INFO_FIELDS.
"""

TOKEN_INFO_FIELDS = (
    ("name", "string"),
    ("symbol", "string"),
    ("metadata", "string"),
    ("creator", "address"),
    ("creatorAllocation", "uint256"),
    ("heldTokens", "uint256"),
    ("maxSupply", "uint256"),
    ("currentSupply", "uint256"),
    ("virtualTrust", "uint256"),
    ("virtualTokens", "uint256"),
    ("completed", "bool"),
    ("creationTime", "uint256"),
)


def _inputs(*pairs):
    return [{"internalType": kind, "name": name, "type": kind} for name, kind in pairs]


def _view(name, inputs, outputs):
    return {
        "inputs": _inputs(*inputs),
        "name": name,
        "outputs": _inputs(*outputs),
        "stateMutability": "view",
        "type": "function",
    }


def _event(name, params):
    return {
        "anonymous": False,
        "inputs": [
            {"indexed": indexed, "internalType": kind, "name": pname, "type": kind}
            for pname, kind, indexed in params
        ],
        "name": name,
        "type": "event",
    }


TRADING_CONTRACT_ABI = [
    _view("getTokenInfo", [("tokenAddress", "address")], TOKEN_INFO_FIELDS),
    _view("getCurrentPrice", [("tokenAddress", "address")], [("", "uint256")]),
    _view("tokenUnlocked", [("tokenAddress", "address")], [("", "bool")]),
    _view("feePercent", [], [("", "uint256")]),
    {
        "inputs": _inputs(("tokenAddress", "address"), ("minTokensOut", "uint256")),
        "name": "buyTokens",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": _inputs(("tokenAddress", "address"), ("tokenAmount", "uint256")),
        "name": "sellTokens",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": _inputs(("name", "string"), ("symbol", "string"), ("metadata", "string")),
        "name": "createToken",
        "outputs": _inputs(("", "address")),
        "stateMutability": "nonpayable",
        "type": "function",
    },
    _event("TokenCreated", [("tokenAddress", "address", True)]),
    _event("TokensBought", [
        ("buyer", "address", True),
        ("tokenAmount", "uint256", False),
        ("ethAmount", "uint256", False),
    ]),
    _event("TokensSold", [
        ("seller", "address", True),
        ("tokenAmount", "uint256", False),
        ("ethAmount", "uint256", False),
    ]),
]

ERC20_ABI = [
    _view("balanceOf", [("account", "address")], [("", "uint256")]),
    _view("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")]),
    {
        "inputs": _inputs(("spender", "address"), ("amount", "uint256")),
        "name": "approve",
        "outputs": _inputs(("", "bool")),
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

# Canonical signatures hashed into topic0
TOKEN_CREATED_SIGNATURE = "TokenCreated(address)"
TOKENS_BOUGHT_SIGNATURE = "TokensBought(address,uint256,uint256)"
TOKENS_SOLD_SIGNATURE = "TokensSold(address,uint256,uint256)"
