import json

import pytest

from nft_bridge.config import load_config, parse_config
from nft_bridge.errors import ConfigurationError


def base_config(**overrides):
    raw = {
        "CHAINS": [
            {"chain_id": 1, "name": "Ethereum", "rpc_url": "http://eth"},
            {"chain_id": 137, "name": "polygon", "rpc_url": "http://polygon"},
        ],
        "LEDGER_NODE_URL": "http://ledger/",
        "LEDGER_BLOCKCHAIN_RID": "00" * 32,
    }
    raw.update(overrides)
    return raw


def test_defaults():
    cfg = parse_config(base_config())
    assert [c.name for c in cfg.chains] == ["ethereum", "polygon"]
    assert cfg.ledger_node_url == "http://ledger"
    assert cfg.batch_size == 100
    assert cfg.batch_max_wait_ms == 10000
    assert cfg.queue_size_threshold == 10000
    assert cfg.metadata_page_size == 10
    assert cfg.ipfs_gateway == "https://ipfs.io/ipfs/"
    assert cfg.ledger_api_key is None
    assert cfg.chain_by_id(137).name == "polygon"
    assert cfg.chain_by_name("ETHEREUM").chain_id == 1
    assert cfg.chain_by_id(10) is None


def test_overrides():
    cfg = parse_config(
        base_config(BATCH_SIZE=25, IPFS_GATEWAY="https://gw.example/ipfs", ENABLE_API=False, LEDGER_API_KEY="k")
    )
    assert cfg.batch_size == 25
    assert cfg.ipfs_gateway == "https://gw.example/ipfs/"
    assert cfg.enable_api is False
    assert cfg.ledger_api_key == "k"


@pytest.mark.parametrize(
    "overrides",
    [
        {"CHAINS": []},
        {"CHAINS": [{"chain_id": 1, "name": "eth"}]},
        {"CHAINS": [{"chain_id": 1, "name": "a", "rpc_url": "x"}, {"chain_id": 1, "name": "b", "rpc_url": "y"}]},
        {"CHAINS": [{"chain_id": 1, "name": "a", "rpc_url": "x"}, {"chain_id": 2, "name": "A", "rpc_url": "y"}]},
        {"CHAINS": [{"name": "a", "rpc_url": "x"}]},
        {"LEDGER_NODE_URL": ""},
        {"LEDGER_BLOCKCHAIN_RID": ""},
        {"BATCH_SIZE": 0},
        {"BATCH_SIZE": "many"},
        {"POLL_INTERVAL_SEC": -1},
    ],
)
def test_invalid_configs_are_rejected(overrides):
    with pytest.raises(ConfigurationError):
        parse_config(base_config(**overrides))


def test_load_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(base_config()), encoding="utf-8")
    assert load_config(str(path)).chains[0].chain_id == 1

    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "missing.json"))

    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(str(path))
