"""Chain names and JSON-RPC configuration."""

import os


#: Chain id -> human readable name.
#:
#: The name is also used to pick the JSON-RPC environment variable, see :py:func:`get_json_rpc_env`.
CHAIN_NAMES = {
    1: "Ethereum",
    42161: "Arbitrum",
    421614: "Arbitrum Sepolia",
    7777: "Testnet",
    31337: "Anvil",
    61: "Ethereum Tester",
    131277322940537: "Ethereum Tester",
}


def get_chain_name(chain_id: int) -> str:
    """Get chain name, or a placeholder for unknown chains."""
    name = CHAIN_NAMES.get(chain_id)
    if name:
        return name

    return f"<Unknown chain, id {chain_id}>"


def get_json_rpc_env(chain: int) -> str:
    """Get the JSON-RPC URL environment variable based on the chain id.

    - Map chain id to a name and from there to environment variables,
      e.g. ``JSON_RPC_ARBITRUM_SEPOLIA``
    """
    chain_name = CHAIN_NAMES.get(chain)
    assert chain_name, f"CHAIN_NAMES not configured for chain {chain}"
    return "JSON_RPC_" + chain_name.upper().replace(" ", "_")


def read_json_rpc_url(chain: int | None = None) -> str:
    """Read JSON-RPC URL from environment variables.

    - ``JSON_RPC_URL`` always wins

    - Otherwise use the chain specific variable, e.g. ``JSON_RPC_ARBITRUM``

    :raises ValueError: If no environment variable is set for the given chain.
    """
    json_rpc_url = os.environ.get("JSON_RPC_URL")
    if json_rpc_url:
        return json_rpc_url

    if chain is None:
        raise ValueError("Environment variable JSON_RPC_URL is not set")

    assert type(chain) is int, f"Chain ID must be an integer: {type(chain)}"
    env_var = get_json_rpc_env(chain)
    json_rpc_url = os.environ.get(env_var)
    if not json_rpc_url:
        raise ValueError(f"Neither JSON_RPC_URL nor {env_var} is set for chain {chain}")
    return json_rpc_url
