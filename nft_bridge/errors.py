from typing import Any, Optional


class BridgeError(Exception):
    code = "BRIDGE_ERROR"


class ConfigurationError(BridgeError):
    code = "CONFIGURATION_ERROR"


class ProviderError(BridgeError):
    """Transport-level failure talking to a chain RPC endpoint."""

    code = "PROVIDER_ERROR"


class RPCError(BridgeError):
    code = "RPC_ERROR"

    def __init__(self, rpc_code: Optional[int], message: str, data: Any = None):
        super().__init__(f"RPC error {rpc_code}: {message}")
        self.rpc_code = rpc_code
        self.rpc_message = message
        self.data = data

    @property
    def is_too_many_results(self) -> bool:
        if self.rpc_code == -32005:
            return True
        msg = self.rpc_message.lower()
        return (
            "too many results" in msg
            or "query returned more than" in msg
            or "block range is too large" in msg
        )

    @property
    def is_filter_not_found(self) -> bool:
        return "filter not found" in self.rpc_message.lower()


class ContractNotFoundError(BridgeError):
    code = "CONTRACT_NOT_FOUND"

    def __init__(self, chain_id: int, address: str):
        super().__init__(f"Contract not found: {address} on chain {chain_id}")


class ProviderNotFoundError(BridgeError):
    code = "PROVIDER_NOT_FOUND"

    def __init__(self, chain: Any):
        super().__init__(f"Provider not found for chain {chain}")


class TokenDoesNotExist(BridgeError):
    code = "TOKEN_DOES_NOT_EXIST"

    def __init__(self, token_id: int):
        super().__init__(f"Token does not exist: {token_id}")
        self.token_id = token_id


class MetadataFetchError(BridgeError):
    code = "METADATA_FETCH_ERROR"


class LedgerError(BridgeError):
    code = "LEDGER_ERROR"


class DuplicateOperationError(LedgerError):
    code = "DUPLICATE_OPERATION"


class LedgerUnavailableError(LedgerError):
    """The ledger could not be reached or answered with a gateway error."""

    code = "LEDGER_UNAVAILABLE"
