"""
Token Transfer API

HTTP boundary for the ledger: a wallet query and a transfer mutation. Ledger
errors map to status codes by category so clients can tell a malformed
request from a rejected one from a storage failure.
"""

from typing import Optional
import uuid

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .addresses import normalize_address
from .config import TokenTransferConfig, get_config
from .engine import TransferEngine
from .errors import (
    AccountNotFoundError, ErrorCategory, InsufficientBalanceError, LedgerError
)
from .logging_config import get_logger
from .reader import BalanceReader
from .storage import WalletStore, create_store


class LedgerSystem:
    """Store, transfer engine and balance reader wired together"""

    def __init__(self, store: WalletStore):
        self.store = store
        self.engine = TransferEngine(store)
        self.reader = BalanceReader(store)

    @classmethod
    def from_config(cls, config: TokenTransferConfig) -> 'LedgerSystem':
        store = create_store(config.database_url, config.wallet_table)
        lock_manager = getattr(store, "lock_manager", None)
        if lock_manager is not None:
            lock_manager.poll_interval = config.lock_poll_interval
        return cls(store)


class TransferRequest(BaseModel):
    from_address: str = Field(..., description="Sender address, 0x + 40 hex digits")
    to_address: str = Field(..., description="Recipient address, 0x + 40 hex digits")
    amount: str = Field(..., description="Decimal amount as string, up to 18 fractional digits")


class TransferResponse(BaseModel):
    balance: str = Field(..., description="Sender balance after the transfer")


class WalletResponse(BaseModel):
    address: str
    balance: str


def error_status(error: LedgerError) -> int:
    """HTTP status for a ledger error"""
    if isinstance(error, AccountNotFoundError):
        return 404
    if isinstance(error, InsufficientBalanceError):
        return 409
    if error.category == ErrorCategory.MALFORMED:
        return 400
    return 503


def get_ledger_system(request: Request) -> LedgerSystem:
    return request.app.state.ledger_system


router = APIRouter()


@router.get("/wallets/{address}", response_model=WalletResponse)
def get_wallet(address: str, system: LedgerSystem = Depends(get_ledger_system)):
    """Get a wallet balance"""
    return system.reader.wallet(address).to_dict()


@router.post("/transfer", response_model=TransferResponse)
def transfer(
    request: TransferRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    x_request_id: Optional[str] = Header(None)
):
    """Transfer tokens between wallets"""
    balance = system.engine.transfer(
        from_address=request.from_address,
        to_address=request.to_address,
        amount=request.amount,
        correlation_id=x_request_id or str(uuid.uuid4())
    )
    return {"balance": balance}


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    logger = get_logger("token_transfer.api")

    app = FastAPI(
        title="Token Transfer API",
        description="Wallet balances and atomic token transfers",
        version="1.0.0"
    )
    app.state.ledger_system = system or LedgerSystem.from_config(get_config())

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = error_status(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={
                "detail": str(exc),
                "error": type(exc).__name__,
                "category": exc.category.value
            }
        )

    app.include_router(router, tags=["Wallets"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "token_transfer_api",
            "version": "1.0.0"
        }

    return app


def bootstrap(config: TokenTransferConfig) -> LedgerSystem:
    """Build the ledger system and make sure its table and seed wallet exist"""
    logger = get_logger("token_transfer.bootstrap")

    system = LedgerSystem.from_config(config)
    system.store.create_table()

    seed_address = normalize_address(config.seed_address)
    if system.store.get_wallet(seed_address) is None:
        system.store.seed_wallet(seed_address, config.seed_balance)
        logger.info(f"Seeded {seed_address} with {config.seed_balance}")

    return system


def run_server(host: str = "0.0.0.0", port: int = 8080, system: Optional[LedgerSystem] = None):
    """Run the API server"""
    uvicorn.run(create_app(system), host=host, port=port)
