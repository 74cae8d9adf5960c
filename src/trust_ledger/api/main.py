# SPDX-License-Identifier: MPL-2.0
"""FastAPI application for the trust ledger.

The HTTP layer is thin: it validates request bodies, calls
:class:`~trust_ledger.services.datasets.DatasetService` and maps the
exception hierarchy onto status codes.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from trust_ledger.core.config import Settings
from trust_ledger.core.db import MAX_INTEGER
from trust_ledger.core.exceptions import (
    InsufficientStakeError,
    NotFoundError,
    SecurityError,
    TokenGateError,
    TransientError,
    TrustLedgerError,
    ValidationError,
)
from trust_ledger.core.models import AccessPolicy, AccessType, ClaimRole, DatasetStatus, Severity
from trust_ledger.services.datasets import AccessRequest, ClaimInput, DatasetService, RegisterInput
from trust_ledger.services.ledger import LedgerIndexer

logger = logging.getLogger(__name__)

SERVICE_NAME = "trust-ledger-api"


class AccessPolicyBody(BaseModel):
    type: AccessType = AccessType.PUBLIC
    min_stake: int = Field(default=0, ge=0, le=MAX_INTEGER)
    allowed_tokens: List[str] = Field(default_factory=list)


class RegisterBody(BaseModel):
    session_id: str
    owner: str
    title: str
    description: str = ""
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    license: str = ""
    access_policy: AccessPolicyBody = Field(default_factory=AccessPolicyBody)


class ClaimBody(BaseModel):
    role: ClaimRole
    severity: Severity
    statement: str = Field(min_length=1)
    evidence_uri: str = ""
    claimant: str = ""


class AccessBody(BaseModel):
    requester: str
    purpose: str = ""
    stake_amount: int = Field(default=0, le=MAX_INTEGER)
    token_holdings: List[str] = Field(default_factory=list)


class ScoreBody(BaseModel):
    verified_by_enclave: bool = False
    perform_integrity_check: bool = False


class TransitionBody(BaseModel):
    reason: Optional[str] = None


class AttestationBody(BaseModel):
    dataset_id: str
    blob_id: Optional[str] = None


def status_for(error: TrustLedgerError) -> int:
    """HTTP status code for a domain error."""
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (InsufficientStakeError, TokenGateError)):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, SecurityError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(error, TransientError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _domain_error_handler(request: Request, exc: TrustLedgerError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=code,
        content={"error": type(exc).__name__, "message": exc.message, "details": exc.details},
    )


def create_app(
    service: DatasetService,
    indexer: Optional[LedgerIndexer] = None,
    settings: Optional[Settings] = None,
    rate_limit: str = "100/minute",
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if indexer is not None:
            await indexer.start()
        try:
            yield
        finally:
            if indexer is not None:
                await indexer.stop()
            await service.close()

    app = FastAPI(
        title="Trust Ledger API",
        description="Dataset certification, provenance and trust scoring",
        version="0.1.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.indexer = indexer

    limiter = Limiter(key_func=get_remote_address, default_limits=[rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(TrustLedgerError, _domain_error_handler)
    app.add_middleware(SlowAPIMiddleware)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):  # type: ignore[no-untyped-def]
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=600,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request) -> Dict[str, Any]:
        """Health check endpoint for monitoring and load balancers."""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "ledger_mode": service.ledger.mode,
            "indexer_running": bool(indexer and indexer.running),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # Datasets

    @app.post("/api/datasets/upload", status_code=status.HTTP_201_CREATED, tags=["Datasets"])
    async def upload(request: Request, file_name: str = Query(..., min_length=1)) -> Dict[str, Any]:
        content = await request.body()
        if not content:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")
        mime_type = request.headers.get("content-type", "application/octet-stream")
        session = await service.create_upload_session(file_name, mime_type, content)
        return {
            "session_id": session.session_id,
            "file_name": session.file_name,
            "blob_id": session.blob.blob_id,
            "integrity_root": session.blob.integrity_root,
            "sha256": session.blob.sha256,
            "secondary": session.blob.secondary,
            "size_bytes": session.blob.size_bytes,
            "mock": session.blob.mock,
        }

    @app.post("/api/datasets/register", status_code=status.HTTP_201_CREATED, tags=["Datasets"])
    @limiter.limit("20/minute")
    async def register(request: Request, body: RegisterBody) -> Dict[str, Any]:
        record = await service.register_dataset(
            RegisterInput(
                session_id=body.session_id,
                owner=body.owner,
                title=body.title,
                description=body.description,
                categories=body.categories,
                tags=body.tags,
                license=body.license,
                access_policy=AccessPolicy(
                    type=body.access_policy.type,
                    min_stake=body.access_policy.min_stake,
                    allowed_tokens=body.access_policy.allowed_tokens,
                ),
            )
        )
        return record.to_dict()

    @app.get("/api/datasets", tags=["Datasets"])
    async def list_datasets(
        request: Request,
        status_filter: Optional[DatasetStatus] = Query(None, alias="status"),
        limit: int = Query(100, ge=1, le=500),
    ) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in service.list_datasets(status_filter, limit)]

    @app.get("/api/datasets/lookup", tags=["Datasets"])
    async def lookup_dataset(request: Request, url: str = Query(..., min_length=1)) -> Dict[str, Any]:
        return service.lookup_dataset(url).to_dict()

    @app.get("/api/datasets/{dataset_id}", tags=["Datasets"])
    async def get_dataset(request: Request, dataset_id: str) -> Dict[str, Any]:
        return service.get_dataset(dataset_id).to_dict()

    @app.post("/api/datasets/{dataset_id}/claims", status_code=status.HTTP_201_CREATED, tags=["Claims"])
    async def add_claim(request: Request, dataset_id: str, body: ClaimBody) -> Dict[str, Any]:
        record = await service.add_claim(
            ClaimInput(
                dataset_id=dataset_id,
                role=body.role,
                severity=body.severity,
                statement=body.statement,
                evidence_uri=body.evidence_uri,
                claimant=body.claimant,
            )
        )
        return record.to_dict()

    @app.post("/api/datasets/{dataset_id}/claims/{claim_id}/resolve", tags=["Claims"])
    async def resolve_claim(request: Request, dataset_id: str, claim_id: str) -> Dict[str, Any]:
        claim = service.resolve_claim(dataset_id, claim_id)
        return {"dataset_id": dataset_id, "claim_id": claim.id, "resolved": claim.resolved}

    @app.post("/api/datasets/{dataset_id}/access", tags=["Access"])
    async def record_access(request: Request, dataset_id: str, body: AccessBody) -> Dict[str, Any]:
        return await service.record_access(
            AccessRequest(
                dataset_id=dataset_id,
                requester=body.requester,
                purpose=body.purpose,
                stake_amount=body.stake_amount,
                token_holdings=body.token_holdings,
            )
        )

    @app.post("/api/datasets/{dataset_id}/certify", tags=["Status"])
    async def certify(request: Request, dataset_id: str, body: Optional[TransitionBody] = None) -> Dict[str, Any]:
        return (await service.certify(dataset_id, (body.reason if body else None) or "Dataset certified")).to_dict()

    @app.post("/api/datasets/{dataset_id}/dispute", tags=["Status"])
    async def dispute(request: Request, dataset_id: str, body: Optional[TransitionBody] = None) -> Dict[str, Any]:
        return (await service.dispute(dataset_id, (body.reason if body else None) or "Dataset disputed")).to_dict()

    @app.post("/api/datasets/{dataset_id}/restore", tags=["Status"])
    async def restore(request: Request, dataset_id: str, body: Optional[TransitionBody] = None) -> Dict[str, Any]:
        return (await service.restore(dataset_id, (body.reason if body else None) or "Dispute resolved")).to_dict()

    # Trust scores

    @app.get("/api/datasets/{dataset_id}/trust-score", tags=["Trust"])
    async def get_trust_score(request: Request, dataset_id: str) -> Dict[str, Any]:
        """The stored snapshot, or an unpublished preview when none exists."""
        dataset = service.get_dataset(dataset_id)
        if dataset.trust is not None:
            return {**dataset.trust.to_dict(), "preview": False}
        return {**service.preview_score(dataset_id).to_dict(), "preview": True}

    @app.post("/api/datasets/{dataset_id}/trust-score", tags=["Trust"])
    @limiter.limit("30/minute")
    async def score(request: Request, dataset_id: str, body: ScoreBody) -> Dict[str, Any]:
        trust = await service.score_dataset(
            dataset_id,
            verified_by_enclave=body.verified_by_enclave,
            perform_integrity_check=body.perform_integrity_check,
        )
        return trust.to_dict()

    @app.get("/api/datasets/{dataset_id}/trust-score/history", tags=["Trust"])
    async def trust_history(
        request: Request, dataset_id: str, limit: int = Query(20, ge=1, le=200)
    ) -> Dict[str, Any]:
        service.get_dataset(dataset_id)
        return {"dataset_id": dataset_id, "history": service.trust_history(dataset_id, limit)}

    # Attestations

    @app.post("/api/attestations", tags=["Attestations"])
    @limiter.limit("10/minute")
    async def attest(request: Request, body: AttestationBody) -> Dict[str, Any]:
        trust = await service.attest_dataset(body.dataset_id, body.blob_id)
        if trust is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Enclave attestation is not configured"
            )
        return {
            "dataset_id": body.dataset_id,
            "proof": trust.enclave_proof.to_dict() if trust.enclave_proof else None,
            "trust_score": trust.to_dict(),
        }

    @app.get("/api/attestations/{dataset_id}", tags=["Attestations"])
    async def latest_attestation(request: Request, dataset_id: str) -> Dict[str, Any]:
        latest = service.latest_attestation(dataset_id)
        if latest is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No attestation for dataset")
        proof, trust = latest
        return {"dataset_id": dataset_id, "proof": proof.to_dict(), "trust_score": trust.to_dict()}

    app.mount("/metrics", make_asgi_app())
    return app
