"""
Chiral Reputation API Server

FastAPI server exposing the reputation service of a Chiral node.
Peer-selection logic, the settlement layer and operators talk to it over
REST.

Endpoints:
- GET /health - Liveness and background task state
- GET /api/v1/status - Component statistics
- GET /api/v1/config - Active reputation configuration
- POST /api/v1/peers/keys - Register a peer's Ed25519 public key
- POST /api/v1/verdicts - Submit a signed verdict
- GET /api/v1/peers/{peer_id}/score - Score and trust level
- GET /api/v1/peers/{peer_id}/summary - Reputation summary
- GET /api/v1/peers/{peer_id}/verdicts - Confirmed verdicts
- GET/POST /api/v1/blacklist - List / add blacklist entries
- GET/DELETE /api/v1/blacklist/{peer_id} - Inspect / remove an entry
- GET /api/v1/analytics - Network-wide analytics
- POST /api/v1/payments/validate - Validate a payment message or handshake

Author: Chiral Network Team
License: MIT
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from loguru import logger

# Chiral imports
from chiral.backends.verdict_backend import VerdictBackend
from chiral.blockchain.chain_observer import ChainObserver
from chiral.p2p.identity import NodeIdentity, PeerKeyring
from chiral.p2p.reputation.config import ReputationConfig
from chiral.p2p.reputation.errors import PersistenceError
from chiral.p2p.reputation.models import (
    SignedTransactionMessage,
    TransactionVerdict,
    ValidationResult,
)
from chiral.p2p.reputation.service import ReputationService


# =============================================================================
# Configuration
# =============================================================================

class ServerConfig(BaseModel):
    """API server configuration."""

    host: str = Field(
        default="127.0.0.1",
        description="Server host (use 0.0.0.0 for Docker/cloud, set via CHIRAL_API_HOST env var)"
    )
    port: int = Field(default=8002, description="Server port")
    workers: int = Field(default=1, description="Number of worker processes")
    reload: bool = Field(default=False, description="Auto-reload on code changes")

    # Node state
    data_dir: Path = Field(
        default=Path("./chiral_data"),
        description="Directory for the node key and reputation database"
    )

    # Blockchain integration
    chain_rpc: str = Field(
        default="ws://localhost:9944",
        description="Payment chain RPC endpoint"
    )
    chain_mock: bool = Field(
        default=True,
        description="Run the chain observer without a chain"
    )

    # Background tasks
    poll_interval: float = Field(default=15.0, gt=0, description="Seconds between confirmation polls")
    maintenance_interval: float = Field(default=300.0, gt=0, description="Seconds between maintenance passes")

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            host=os.getenv("CHIRAL_API_HOST", "127.0.0.1"),
            port=int(os.getenv("CHIRAL_API_PORT", "8002")),
            workers=int(os.getenv("WORKERS", "1")),
            reload=os.getenv("RELOAD", "false").lower() == "true",
            data_dir=Path(os.getenv("CHIRAL_DATA_DIR", "./chiral_data")),
            chain_rpc=os.getenv("CHIRAL_CHAIN_RPC", "ws://localhost:9944"),
            chain_mock=os.getenv("CHIRAL_CHAIN_MOCK", "true").lower() == "true",
        )


# =============================================================================
# API Models
# =============================================================================

class VerdictRequest(BaseModel):
    """Signed verdict as sent by its issuer."""

    target_id: str
    outcome: Literal["good", "disputed", "bad"]
    issued_at: float
    issuer_id: str
    issuer_seq_no: int = Field(..., ge=0)
    issuer_sig: str
    tx_hash: Optional[str] = None
    details: Optional[str] = None
    metric: Optional[str] = None
    tx_receipt: Optional[str] = None
    evidence_blobs: Optional[List[str]] = None


class VerdictResponse(BaseModel):
    """Verdict submission result."""

    accepted: bool
    reason: Optional[str] = None
    detail: str = ""
    pending_confirmation: bool = False


class KeyRegistration(BaseModel):
    """Peer public key registration."""

    public_key: str = Field(..., description="Raw Ed25519 public key, hex")
    alias: Optional[str] = Field(default=None, description="Extra ID for the key, e.g. a wallet address")


class ScoreResponse(BaseModel):
    """Peer score response."""

    peer_id: str
    score: float
    trust_level: str
    blacklisted: bool


class BlacklistRequest(BaseModel):
    """Manual blacklist request."""

    peer_id: str
    reason: str
    evidence: Optional[List[str]] = None


class PaymentValidationRequest(BaseModel):
    """Signed payment message, with an optional file price for the full handshake."""

    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(..., alias="from")
    to: str
    amount: int
    file_hash: str
    nonce: str
    deadline: float
    downloader_signature: str
    file_price: Optional[int] = Field(
        default=None, description="If set, run the full seeder handshake"
    )


# =============================================================================
# Global State
# =============================================================================

class AppState:
    """Application state."""

    def __init__(self):
        self.config: Optional[ServerConfig] = None
        self.observer: Optional[ChainObserver] = None
        self.store: Optional[VerdictBackend] = None
        self.service: Optional[ReputationService] = None

    async def initialize(
        self,
        config: ServerConfig,
        reputation_config: Optional[ReputationConfig] = None
    ):
        """Initialize application state."""
        self.config = config
        config.data_dir.mkdir(parents=True, exist_ok=True)

        identity = NodeIdentity.load_or_generate(config.data_dir)
        self.store = VerdictBackend(db_path=str(config.data_dir / "reputation.db"))
        self.observer = ChainObserver(node_url=config.chain_rpc, mock_mode=config.chain_mock)
        await self.observer.connect()

        self.service = ReputationService(
            config=reputation_config or ReputationConfig(),
            keyring=PeerKeyring(),
            observer=self.observer,
            store=self.store,
            identity=identity,
            poll_interval=config.poll_interval,
            maintenance_interval=config.maintenance_interval,
        )
        await self.service.start()

        logger.info("✅ Chiral reputation service initialized")
        logger.info("   Node: {}...", identity.peer_id[:16])
        logger.info("   Data dir: {}", config.data_dir)
        logger.info("   Chain: {}", "mock" if config.chain_mock else config.chain_rpc)

    async def shutdown(self):
        """Cleanup resources."""
        if self.service:
            await self.service.stop()
        if self.observer:
            await self.observer.disconnect()
        logger.info("✅ Chiral API server shutdown complete")


# Global app state
app_state = AppState()


def get_service() -> ReputationService:
    if app_state.service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reputation service not initialized"
        )
    return app_state.service


def validation_response(result: ValidationResult, **extra: Any) -> JSONResponse:
    """202 for accepted, 422 with the rejection reason otherwise."""
    body = result.to_dict()
    body.update(extra)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED if result.accepted else status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    # Startup
    await app_state.initialize(ServerConfig.from_env(), ReputationConfig.from_env())

    yield

    # Shutdown
    await app_state.shutdown()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Chiral Reputation API",
    description="Transaction-backed peer reputation for the Chiral P2P network",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Health & Status Endpoints
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    service = app_state.service
    return {
        "status": "healthy",
        "service": "chiral-reputation-api",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "running": service is not None and service.running,
        "pending_confirmations": service.tracker.pending_count() if service else 0,
    }


@app.get("/api/v1/status")
async def get_status():
    """Get component statistics."""
    service = get_service()
    stats = service.get_statistics()
    stats["store"] = app_state.store.get_statistics() if app_state.store else None
    return stats


@app.get("/api/v1/config")
async def get_config():
    """Active reputation configuration."""
    return get_service().config.model_dump(mode="json")


# =============================================================================
# Keys & Verdicts
# =============================================================================

@app.post("/api/v1/peers/keys", status_code=status.HTTP_201_CREATED)
async def register_key(request: KeyRegistration):
    """Register a peer's public key so its signatures can be verified."""
    try:
        raw = bytes.fromhex(request.public_key)
        peer_id = get_service().keyring.register(raw, alias=request.alias)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid Ed25519 public key: {e}"
        )
    return {"peer_id": peer_id, "alias": request.alias}


@app.post("/api/v1/verdicts", response_model=VerdictResponse)
async def submit_verdict(request: VerdictRequest):
    """
    Submit a signed verdict.

    Returns 202 when accepted (payment-backed verdicts then wait for chain
    confirmation) and 422 with the rejection reason otherwise.
    """
    service = get_service()
    verdict = TransactionVerdict.from_dict(request.model_dump())

    try:
        result = service.submit_verdict(verdict)
    except PersistenceError as e:
        logger.error("Failed to persist verdict from {}: {}", verdict.issuer_id[:16], e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Verdict store unavailable"
        )

    return validation_response(
        result,
        pending_confirmation=result.accepted and verdict.is_payment_backed,
    )


@app.get("/api/v1/peers/{peer_id}/score", response_model=ScoreResponse)
async def get_score(peer_id: str):
    """Current score and trust level of a peer."""
    service = get_service()
    score, level = service.get_score(peer_id)
    return ScoreResponse(
        peer_id=peer_id,
        score=score,
        trust_level=level.value,
        blacklisted=service.is_blacklisted(peer_id),
    )


@app.get("/api/v1/peers/{peer_id}/summary")
async def get_summary(peer_id: str):
    """Reputation summary of a peer."""
    return get_service().get_peer_summary(peer_id).to_dict()


@app.get("/api/v1/peers/{peer_id}/verdicts")
async def get_verdicts(peer_id: str, limit: int = 100):
    """Confirmed verdicts about a peer, newest first."""
    verdicts = get_service().get_verdicts(peer_id)
    verdicts.reverse()
    return [v.to_dict() for v in verdicts[:max(0, limit)]]


# =============================================================================
# Blacklist
# =============================================================================

def _entry_dict(service: ReputationService, entry) -> Dict[str, Any]:
    data = entry.to_dict()
    data["expires_at"] = service.blacklist.expires_at(entry.peer_id)
    return data


@app.get("/api/v1/blacklist")
async def list_blacklist():
    """All active blacklist entries."""
    service = get_service()
    return [_entry_dict(service, entry) for entry in service.list_blacklist()]


@app.post("/api/v1/blacklist", status_code=status.HTTP_201_CREATED)
async def add_to_blacklist(request: BlacklistRequest):
    """Manually blacklist a peer."""
    service = get_service()
    try:
        entry = service.blacklist_peer(request.peer_id, request.reason, request.evidence)
    except PersistenceError as e:
        logger.error("Failed to persist blacklist entry for {}: {}", request.peer_id[:16], e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Verdict store unavailable"
        )

    logger.info("⛔ Manually blacklisted {}", request.peer_id[:16])
    return _entry_dict(service, entry)


@app.get("/api/v1/blacklist/{peer_id}")
async def get_blacklist_entry(peer_id: str):
    """Blacklist state of a peer."""
    service = get_service()
    blacklisted = service.is_blacklisted(peer_id)
    entry = service.blacklist.get_entry(peer_id)
    return {
        "peer_id": peer_id,
        "blacklisted": blacklisted,
        "state": service.blacklist.state(peer_id).value,
        "entry": _entry_dict(service, entry) if entry else None,
    }


@app.delete("/api/v1/blacklist/{peer_id}")
async def remove_from_blacklist(peer_id: str):
    """Remove a peer from the blacklist."""
    service = get_service()
    try:
        removed = service.unblacklist_peer(peer_id)
    except PersistenceError as e:
        logger.error("Failed to persist blacklist removal for {}: {}", peer_id[:16], e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Verdict store unavailable"
        )

    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Peer {peer_id} is not blacklisted"
        )
    return {"message": f"Peer {peer_id} removed from blacklist"}


# =============================================================================
# Analytics & Payments
# =============================================================================

@app.get("/api/v1/analytics")
async def get_analytics(recent_limit: int = 20, top_k: int = 10):
    """Network-wide reputation analytics."""
    return get_service().get_analytics(recent_limit=recent_limit, top_k=top_k).to_dict()


@app.post("/api/v1/payments/validate")
async def validate_payment(request: PaymentValidationRequest):
    """
    Validate a signed payment message.

    With `file_price` the full seeder handshake runs (reputation, balance,
    deadline margin); without it only the message itself is checked.
    """
    service = get_service()
    message = SignedTransactionMessage(
        from_address=request.from_address,
        to=request.to,
        amount=request.amount,
        file_hash=request.file_hash,
        nonce=request.nonce,
        deadline=request.deadline,
        downloader_signature=request.downloader_signature,
    )

    if request.file_price is None:
        result = service.validate_payment_message(message)
    else:
        result = await service.validate_handshake(message, request.file_price)
    return validation_response(result)


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run API server."""
    # Configure logging
    logger.add(
        "logs/chiral_api_{time}.log",
        rotation="1 day",
        retention="30 days",
        level="INFO"
    )

    config = ServerConfig.from_env()

    logger.info("🚀 Starting Chiral Reputation API server on {}:{}", config.host, config.port)
    logger.info("   Data dir: {}", config.data_dir)
    logger.info("   Chain RPC: {}", "mock" if config.chain_mock else config.chain_rpc)
    logger.info("   Reload: {}", config.reload)
    logger.info("   Workers: {}", config.workers)

    # Run server
    uvicorn.run(
        "chiral.api_server:app",
        host=config.host,
        port=config.port,
        reload=config.reload,
        workers=config.workers if not config.reload else 1,
        log_level="info",
    )


if __name__ == "__main__":
    main()
