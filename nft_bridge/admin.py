import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from web3 import Web3
from web3.exceptions import Web3Exception

from .codec import normalize_address
from .config import AppConfig, load_config
from .errors import BridgeError, ContractNotFoundError, ProviderNotFoundError
from .ledger import LedgerClient
from .logging_config import setup_logging
from .models import contract_kind
from .rpc import RPCClient
from .storage import FAILED, OperationQueue


async def register_chain(cfg: AppConfig, name: str) -> Dict[str, Any]:
    chain = cfg.chain_by_name(name)
    if chain is None:
        raise ProviderNotFoundError(name)
    async with LedgerClient.from_config(cfg) as ledger:
        await ledger.register_chain(chain.name)
    return {"registered": "chain", "chain": chain.name}


async def register_contract(
    cfg: AppConfig,
    chain_name: str,
    address: str,
    project: str,
    collection: str,
    block_height: int,
    contract_type: str,
    check_code: bool = True,
) -> Dict[str, Any]:
    chain = cfg.chain_by_name(chain_name)
    if chain is None:
        raise ProviderNotFoundError(chain_name)
    kind = contract_kind(contract_type)
    address = normalize_address(address)

    if check_code:
        async with RPCClient(chain.rpc_url, max_retries=cfg.max_rpc_retries, name=chain.name) as rpc:
            code = await rpc.get_code(address)
        if code in {"0x", "0x0", ""}:
            raise ContractNotFoundError(chain.chain_id, address)

    async with LedgerClient.from_config(cfg) as ledger:
        await ledger.register_contract(chain.name, address, project, collection, block_height, kind.name)
    return {
        "registered": "contract",
        "chain": chain.name,
        "address": address,
        "type": kind.name,
        "block_height": block_height,
    }


def queue_stats(cfg: AppConfig, limit_n: int) -> Dict[str, Any]:
    queue = OperationQueue(cfg.sqlite_path)
    try:
        return {
            "sizes": queue.get_queue_sizes(),
            "queues": [f"{chain}:{contract}" for chain, contract in queue.list_queue_keys()],
            "failed": queue.list_entries(FAILED, limit_n),
        }
    finally:
        queue.close()


def requeue_failed(cfg: AppConfig, chain: Optional[str], contract: Optional[str]) -> Dict[str, Any]:
    queue = OperationQueue(cfg.sqlite_path)
    try:
        moved = queue.requeue_failed(chain=chain, contract=contract)
    finally:
        queue.close()
    return {"requeued": moved}


ERC721_MINT_ABI = [
    {
        "type": "function",
        "name": "mint",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "name",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "type": "function",
        "name": "symbol",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
]


def connect_web3(rpc_url: str) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url))


class Minter:
    """Sends ``mint(address)`` transactions to a test collection, one at a time."""

    def __init__(self, w3: Web3, contract_address: str, private_key: str, receipt_timeout_sec: float = 120):
        self.w3 = w3
        self.account = w3.eth.account.from_key(private_key)
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=ERC721_MINT_ABI)
        self.receipt_timeout_sec = receipt_timeout_sec

    def describe(self) -> Dict[str, str]:
        return {
            "name": self.contract.functions.name().call(),
            "symbol": self.contract.functions.symbol().call(),
            "signer": self.account.address,
        }

    def mint_to(self, recipient: str) -> str:
        tx = self.contract.functions.mint(Web3.to_checksum_address(recipient)).build_transaction(
            {
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address),
            }
        )
        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout_sec)
        if receipt["status"] != 1:
            raise BridgeError(f"mint transaction {Web3.to_hex(tx_hash)} reverted")
        return Web3.to_hex(tx_hash)


def mint(
    cfg: AppConfig,
    chain_name: str,
    contract: str,
    amount: int,
    wallet: Optional[str],
    private_key: str,
) -> Dict[str, Any]:
    """Mint ``amount`` tokens to ``wallet``, or one token each to ``amount``
    fresh wallets whose keys are returned with the result."""
    if amount < 1:
        raise ValueError("amount must be at least 1")
    chain = cfg.chain_by_name(chain_name)
    if chain is None:
        raise ProviderNotFoundError(chain_name)

    try:
        minter = Minter(connect_web3(chain.rpc_url), contract, private_key)
        result: Dict[str, Any] = dict(minter.describe(), contract=minter.contract.address, minted=[])
        if wallet:
            recipient = Web3.to_checksum_address(wallet)
            for _ in range(amount):
                result["minted"].append({"wallet": recipient, "tx": minter.mint_to(recipient)})
        else:
            for _ in range(amount):
                account = minter.w3.eth.account.create()
                result["minted"].append(
                    {
                        "wallet": account.address,
                        "private_key": "0x" + bytes(account.key).hex(),
                        "tx": minter.mint_to(account.address),
                    }
                )
    except (Web3Exception, OSError) as e:
        raise BridgeError(f"mint on {chain.name} failed: {type(e).__name__}: {e}") from e
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="nft-bridge administration")
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("register-chain", help="register a configured source chain on the ledger")
    p.add_argument("name")

    p = sub.add_parser("register-contract", help="register a contract for monitoring")
    p.add_argument("--chain", required=True)
    p.add_argument("--address", required=True)
    p.add_argument("--project", required=True)
    p.add_argument("--collection", required=True)
    p.add_argument("--block-height", type=int, required=True, help="first block to scan")
    p.add_argument("--type", default="erc721", choices=["erc721", "erc1155"])
    p.add_argument("--skip-code-check", action="store_true", help="do not verify the address has code")

    p = sub.add_parser("queue-stats", help="show local queue sizes and failed operations")
    p.add_argument("--limit", type=int, default=20)

    p = sub.add_parser("requeue-failed", help="move failed operations back to the main queue")
    p.add_argument("--chain")
    p.add_argument("--contract")

    p = sub.add_parser("mint", help="mint test tokens on a source chain collection")
    p.add_argument("--chain", required=True)
    p.add_argument("--contract", required=True)
    p.add_argument("--amount", type=int, required=True)
    p.add_argument("--wallet", help="recipient; fresh wallets are created when omitted")
    p.add_argument("--private-key", required=True, help="key of an account allowed to mint")
    return parser


def run_command(args: argparse.Namespace) -> Dict[str, Any]:
    cfg = load_config(args.config)
    if args.command == "register-chain":
        return asyncio.run(register_chain(cfg, args.name))
    if args.command == "register-contract":
        return asyncio.run(
            register_contract(
                cfg,
                args.chain,
                args.address,
                args.project,
                args.collection,
                args.block_height,
                args.type,
                check_code=not args.skip_code_check,
            )
        )
    if args.command == "queue-stats":
        return queue_stats(cfg, args.limit)
    if args.command == "requeue-failed":
        return requeue_failed(cfg, args.chain, args.contract)
    if args.command == "mint":
        return mint(cfg, args.chain, args.contract, args.amount, args.wallet, args.private_key)
    raise BridgeError(f"unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging("warning")
    try:
        result = run_command(args)
    except (BridgeError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
