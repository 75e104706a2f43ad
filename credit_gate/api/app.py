"""
HTTP surface for the gated actions.

One POST endpoint per operation, JSON in and JSON out. Every CreditGateError
becomes `{"error": message}` with the error's status code.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from credit_gate.config.loader import RuntimeSettings
from credit_gate.core.auth import TokenAuthenticator
from credit_gate.core.errors import CreditGateError, RateLimited
from credit_gate.core.free_tier import FreeTierCounter
from credit_gate.core.gateway import ActionGateway
from credit_gate.core.ledger import CreditLedger
from credit_gate.core.rate_limiter import RateLimiter
from credit_gate.core.tailoring import TailoringService
from credit_gate.sdk.llm_client import CompletionClient
from credit_gate.storage.repository import Repository, initialize_schema

logger = logging.getLogger(__name__)


class GenerateContentRequest(BaseModel):
    job_description: Optional[str] = None
    profile: Optional[Dict[str, Any]] = None
    output_type: Optional[str] = None
    company_name: Optional[str] = None
    job_title: Optional[str] = None


class RefineBulletRequest(BaseModel):
    application_id: Optional[str] = None
    bullet: Optional[str] = None
    refinement_type: Optional[str] = None
    job_context: Optional[str] = None


class RefineCoverLetterRequest(BaseModel):
    application_id: Optional[str] = None
    cover_letter: Optional[str] = None
    refinement_type: Optional[str] = None
    job_description: Optional[str] = None
    candidate_name: Optional[str] = None


class GenerateReplyRequest(BaseModel):
    pasted_message: Optional[str] = None
    user_instructions: Optional[str] = None
    application_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_type: Optional[str] = None
    sender_profile: Optional[Dict[str, Any]] = None


class ApplicationRequest(BaseModel):
    application_id: Optional[str] = None


class CreateApplicationRequest(BaseModel):
    company: Optional[str] = None
    role: Optional[str] = None


def build_service(settings: RuntimeSettings) -> TailoringService:
    """Wire storage, accounting and the completion client from settings."""
    config = settings.load_accounting_config()
    initialize_schema(settings.db_path)
    repository = Repository(settings.db_path)

    free_tier = FreeTierCounter(
        repository, config.free_tier, on_storage_error=config.storage_failure.free_tier
    )
    gateway = ActionGateway(
        authenticator=TokenAuthenticator(settings.jwt_secret, audience=settings.jwt_audience),
        rate_limiter=RateLimiter(
            repository, config.rate_limits, on_storage_error=config.storage_failure.rate_limiter
        ),
        ledger=CreditLedger(repository, config.costs, free_tier=free_tier),
        free_tier=free_tier,
    )
    llm = CompletionClient(
        model=settings.llm_model,
        timeout=settings.llm_timeout_seconds,
        max_retries=settings.llm_max_retries,
        base_url=settings.llm_base_url,
    )
    return TailoringService(gateway, repository, llm, config)


def create_app(service: TailoringService) -> FastAPI:
    """Build the FastAPI app around a tailoring service."""
    app = FastAPI(title="Credit Gate", version="0.1.0")

    @app.exception_handler(CreditGateError)
    async def credit_gate_error_handler(request: Request, exc: CreditGateError):
        headers = {}
        if isinstance(exc, RateLimited) and exc.retry_after_seconds:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Request failed unexpectedly. Please try again."},
        )

    @app.post("/generate-content")
    def generate_content(body: GenerateContentRequest, authorization: Optional[str] = Header(None)):
        return service.generate_content(
            authorization,
            body.job_description,
            body.profile,
            output_type=body.output_type,
            company_name=body.company_name,
            job_title=body.job_title,
        )

    @app.post("/refine-bullet")
    def refine_bullet(body: RefineBulletRequest, authorization: Optional[str] = Header(None)):
        return service.refine_bullet(
            authorization,
            body.application_id,
            body.bullet,
            body.refinement_type,
            job_context=body.job_context,
        )

    @app.post("/refine-cover-letter")
    def refine_cover_letter(body: RefineCoverLetterRequest, authorization: Optional[str] = Header(None)):
        return service.refine_cover_letter(
            authorization,
            body.application_id,
            body.cover_letter,
            body.refinement_type,
            job_description=body.job_description,
            candidate_name=body.candidate_name,
        )

    @app.post("/generate-reply")
    def generate_reply(body: GenerateReplyRequest, authorization: Optional[str] = Header(None)):
        return service.generate_reply(
            authorization,
            body.pasted_message,
            user_instructions=body.user_instructions,
            application_id=body.application_id,
            conversation_id=body.conversation_id,
            message_type=body.message_type,
            sender_profile=body.sender_profile,
        )

    @app.post("/check-edits")
    def check_edits(body: ApplicationRequest, authorization: Optional[str] = Header(None)):
        return service.check_edits(authorization, body.application_id)

    @app.post("/purchase-edits")
    def purchase_edits(body: ApplicationRequest, authorization: Optional[str] = Header(None)):
        return service.purchase_edits(authorization, body.application_id)

    @app.post("/check-free-replies")
    def check_free_replies(authorization: Optional[str] = Header(None)):
        return service.check_free_replies(authorization)

    @app.post("/purchase-replies")
    def purchase_replies(authorization: Optional[str] = Header(None)):
        return service.purchase_replies(authorization)

    @app.post("/applications")
    def create_application(body: CreateApplicationRequest, authorization: Optional[str] = Header(None)):
        return service.create_application(authorization, company=body.company, role=body.role)

    return app


def create_app_from_env() -> FastAPI:
    """App factory for `uvicorn --factory`, configured from CREDIT_GATE_* variables."""
    return create_app(build_service(RuntimeSettings.from_env()))
