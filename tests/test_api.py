"""
Integration tests for the Token Transfer API
Tests the wallet query and transfer mutation using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from token_transfer.api import LedgerSystem, bootstrap, create_app, error_status
from token_transfer.config import TokenTransferConfig
from token_transfer.errors import (
    AccountNotFoundError, InsufficientBalanceError, InvalidAmountFormatError,
    SameAddressError, StoreError
)
from token_transfer.storage import InMemoryWalletStore


SEED_ADDRESS = "0x0000000000000000000000000000000000000000"
A_ADDRESS = "0xA000000000000000000000000000000000000000"
B_ADDRESS = "0xB000000000000000000000000000000000000000"


@pytest.fixture
def system():
    store = InMemoryWalletStore("test_wallets")
    store.seed_wallet(A_ADDRESS.lower(), "1000")
    return LedgerSystem(store)


@pytest.fixture
def client(system):
    """Test client over an in-memory ledger"""
    return TestClient(create_app(system))


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestWalletQuery:
    """Test GET /wallets/{address}"""

    def test_get_wallet(self, client):
        r = client.get(f"/wallets/{A_ADDRESS}")
        assert r.status_code == 200
        assert r.json() == {
            "address": A_ADDRESS.lower(),
            "balance": "1000.000000000000000000"
        }

    def test_missing_wallet(self, client):
        r = client.get(f"/wallets/{B_ADDRESS}")
        assert r.status_code == 404
        data = r.json()
        assert data["error"] == "AccountNotFoundError"
        assert data["category"] == "rejected"

    def test_malformed_address(self, client):
        r = client.get("/wallets/0x123")
        assert r.status_code == 400
        assert r.json()["detail"] == "invalid Ethereum address format"

    def test_storage_failure(self, client, system, monkeypatch):
        def broken_get_wallet(address):
            raise StoreError("connection refused")

        monkeypatch.setattr(system.store, "get_wallet", broken_get_wallet)
        r = client.get(f"/wallets/{A_ADDRESS}")
        assert r.status_code == 503
        assert r.json()["category"] == "storage"


class TestTransferMutation:
    """Test POST /transfer"""

    def test_transfer(self, client):
        r = client.post("/transfer", json={
            "from_address": A_ADDRESS,
            "to_address": B_ADDRESS,
            "amount": "100"
        })
        assert r.status_code == 200
        assert r.json() == {"balance": "900.000000000000000000"}

        r = client.get(f"/wallets/{B_ADDRESS}")
        assert r.json()["balance"] == "100.000000000000000000"

    def test_insufficient_balance(self, client):
        r = client.post("/transfer", json={
            "from_address": A_ADDRESS,
            "to_address": B_ADDRESS,
            "amount": "1100"
        })
        assert r.status_code == 409
        assert r.json()["detail"] == "insufficient balance"

    def test_missing_sender(self, client):
        r = client.post("/transfer", json={
            "from_address": B_ADDRESS,
            "to_address": A_ADDRESS,
            "amount": "1"
        })
        assert r.status_code == 404

    def test_malformed_amount(self, client):
        r = client.post("/transfer", json={
            "from_address": A_ADDRESS,
            "to_address": B_ADDRESS,
            "amount": "abc123"
        })
        assert r.status_code == 400
        assert r.json()["error"] == "InvalidAmountFormatError"

    def test_numeric_amount_rejected(self, client):
        """Amounts must be sent as strings, never as JSON numbers"""
        r = client.post("/transfer", json={
            "from_address": A_ADDRESS,
            "to_address": B_ADDRESS,
            "amount": 0.1
        })
        assert r.status_code == 422

    def test_same_address(self, client):
        r = client.post("/transfer", json={
            "from_address": A_ADDRESS,
            "to_address": A_ADDRESS.lower(),
            "amount": "1"
        })
        assert r.status_code == 400
        assert r.json()["detail"] == "sender and recipient addresses must be different"


class TestErrorStatus:
    """Test the error category to HTTP status mapping"""

    @pytest.mark.parametrize("error,status", [
        (InvalidAmountFormatError(), 400),
        (SameAddressError(), 400),
        (AccountNotFoundError("0xabc"), 404),
        (InsufficientBalanceError(), 409),
        (StoreError(), 503),
    ])
    def test_error_status(self, error, status):
        assert error_status(error) == status


class TestBootstrap:
    """Test table provisioning and seeding"""

    def test_bootstrap_seeds_once(self, tmp_path):
        config = TokenTransferConfig(
            database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
            wallet_table="test_wallets",
            seed_balance="1000000"
        )

        system = bootstrap(config)
        seed = system.store.get_wallet(SEED_ADDRESS)
        assert seed.to_dict()["balance"] == "1000000.000000000000000000"

        # Second start keeps the existing seed wallet
        system.engine.transfer(SEED_ADDRESS, A_ADDRESS, "1")
        system = bootstrap(config)
        assert system.store.get_wallet(SEED_ADDRESS).to_dict()["balance"] == "999999.000000000000000000"
