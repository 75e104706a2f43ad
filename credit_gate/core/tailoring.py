"""
Tailoring operations.

Content generation, bullet and cover-letter refinement and Smart Reply, each
run through the action gateway, plus the free-tier status and pack purchase
helpers shown next to them. Every operation returns the JSON-ready response
body for its endpoint.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from credit_gate.config.loader import CreditGateConfig
from credit_gate.sdk.llm_client import Completion, CompletionClient, parse_json_response
from credit_gate.storage.models import Application, ConversationMessage
from credit_gate.storage.repository import Repository

from . import prompts
from .actions import ActionType, FreeTierFeature
from .errors import AccessDenied, InvalidInput, StorageError, UpstreamInvalidResponse
from .free_tier import FreeTierCounter
from .gateway import ActionGateway
from .validation import validate_optional_text, validate_text

logger = logging.getLogger(__name__)

GENERATION_ACTIONS = {
    "full": ActionType.GENERATION_FULL,
    "cv": ActionType.GENERATION_CV_ONLY,
    "cover": ActionType.GENERATION_COVER_ONLY,
}

BULLET_ACTIONS = {
    "shorter": ActionType.REFINE_BULLET_SHORTER,
    "add_metrics": ActionType.REFINE_BULLET_METRICS,
    "rephrase": ActionType.REFINE_BULLET_REPHRASE,
}

COVER_LETTER_ACTIONS = {
    "shorter": ActionType.REFINE_COVER_SHORTER,
    "regenerate": ActionType.REFINE_COVER_REGENERATE,
}

MAX_TOKENS = {
    "full": 2048,
    "cv": 1500,
    "cover": 1000,
    "bullet": 256,
    "cover_letter": 512,
    "reply": 1024,
}

MIN_BULLET_LENGTH = 10
MIN_COVER_LETTER_LENGTH = 50
MIN_REPLY_LENGTH = 20

INVALID_RESPONSE = "AI returned an invalid response. Please try again."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_subject(text: str) -> Tuple[Optional[str], str]:
    """Split a composed email into (subject, body) on the first '---' line."""
    if "---" not in text:
        return None, text
    subject, body = text.split("---", 1)
    return subject.strip() or None, body.strip()


class TailoringService:
    """Gated AI operations and their free-tier helpers."""

    def __init__(
        self,
        gateway: ActionGateway,
        repository: Repository,
        llm: CompletionClient,
        config: CreditGateConfig,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.gateway = gateway
        self.repository = repository
        self.llm = llm
        self.config = config
        self.clock = clock

    @property
    def free_tier(self) -> FreeTierCounter:
        return self.gateway.free_tier

    @property
    def limits(self):
        return self.config.input_limits

    # -- generation -----------------------------------------------------------

    def generate_content(
        self,
        credential: Optional[str],
        job_description: Any,
        profile: Any,
        output_type: Optional[str] = None,
        company_name: Any = None,
        job_title: Any = None,
    ) -> Dict[str, Any]:
        """Generate tailored bullets and/or a cover letter for a job posting."""
        output_type = output_type or "full"
        # every output type shares the generation category
        action = GENERATION_ACTIONS.get(output_type, ActionType.GENERATION_FULL)
        account_id = self.gateway.admit(credential, action)

        job_description = validate_text(job_description, "job_description", self.limits)
        company_name = validate_optional_text(company_name, "Company name", self.limits)
        job_title = validate_optional_text(job_title, "Job title", self.limits)
        if output_type not in GENERATION_ACTIONS:
            raise InvalidInput("Invalid output type. Must be: full, cv, or cover")
        if not isinstance(profile, Mapping) or not (
            profile.get("work_experience") or profile.get("skills")
        ):
            raise InvalidInput("Profile must include work experience or skills")

        user_prompt = prompts.build_generation_prompt(job_description, profile, company_name, job_title)

        def call(_account_id: str) -> Tuple[Dict[str, Any], Completion]:
            completion = self.llm.complete(
                prompts.GENERATION_PROMPTS[output_type], user_prompt, MAX_TOKENS[output_type]
            )
            generated = parse_json_response(completion.text)
            if not _is_complete(generated, output_type):
                raise UpstreamInvalidResponse("AI response was incomplete. Please try again.")
            return generated, completion

        outcome = self.gateway.run(account_id, action, call)
        generated, completion = outcome.result
        return {
            **generated,
            "credits_remaining": float(outcome.credits_remaining),
            "tokens_used": {
                "input": completion.input_tokens,
                "output": completion.output_tokens,
            },
        }

    # -- refinement -----------------------------------------------------------

    def refine_bullet(
        self,
        credential: Optional[str],
        application_id: Any,
        bullet: Any,
        refinement_type: Any,
        job_context: Any = None,
    ) -> Dict[str, Any]:
        """Shorten, quantify or rephrase one CV bullet."""
        action = BULLET_ACTIONS.get(refinement_type, ActionType.REFINE_BULLET_REPHRASE)
        account_id = self.gateway.admit(credential, action)

        if not application_id:
            raise InvalidInput("Application ID is required")
        bullet = validate_text(bullet, "bullet", self.limits)
        if refinement_type not in BULLET_ACTIONS:
            raise InvalidInput("Invalid refinement type. Must be: shorter, add_metrics, or rephrase")
        job_context = validate_optional_text(job_context, "Job context", self.limits, field="job_description")
        self._require_application(account_id, application_id)

        system_prompt = prompts.BULLET_REFINEMENT_PROMPTS[refinement_type]
        user_prompt = prompts.build_bullet_prompt(bullet, job_context)

        def call(_account_id: str) -> str:
            completion = self.llm.complete(system_prompt, user_prompt, MAX_TOKENS["bullet"])
            if len(completion.text) < MIN_BULLET_LENGTH:
                raise UpstreamInvalidResponse(INVALID_RESPONSE)
            return completion.text

        outcome = self.gateway.run(account_id, action, call, scope_key=application_id)
        return {
            "original": bullet,
            "refined": outcome.result,
            "refinement_type": refinement_type,
            "credits_remaining": float(outcome.credits_remaining),
            "was_free": outcome.was_free,
            "free_tier": outcome.free_tier.as_dict(),
        }

    def refine_cover_letter(
        self,
        credential: Optional[str],
        application_id: Any,
        cover_letter: Any,
        refinement_type: Any,
        job_description: Any = None,
        candidate_name: Any = None,
    ) -> Dict[str, Any]:
        """Condense a cover letter or write a new one for the same job."""
        action = COVER_LETTER_ACTIONS.get(refinement_type, ActionType.REFINE_COVER_SHORTER)
        account_id = self.gateway.admit(credential, action)

        if not application_id:
            raise InvalidInput("Application ID is required")
        cover_letter = validate_text(cover_letter, "cover_letter", self.limits)
        if refinement_type not in COVER_LETTER_ACTIONS:
            raise InvalidInput("Invalid refinement type. Must be: shorter or regenerate")
        job_description = validate_optional_text(
            job_description, "Job description", self.limits, field="job_description"
        )
        if refinement_type == "regenerate" and not job_description:
            raise InvalidInput("Job description is required for regeneration")
        candidate_name = validate_optional_text(candidate_name, "Candidate name", self.limits)
        self._require_application(account_id, application_id)

        system_prompt = prompts.COVER_LETTER_REFINEMENT_PROMPTS[refinement_type]
        user_prompt = prompts.build_cover_letter_prompt(
            cover_letter, refinement_type, job_description, candidate_name
        )

        def call(_account_id: str) -> str:
            completion = self.llm.complete(system_prompt, user_prompt, MAX_TOKENS["cover_letter"])
            if len(completion.text) < MIN_COVER_LETTER_LENGTH:
                raise UpstreamInvalidResponse(INVALID_RESPONSE)
            return completion.text

        outcome = self.gateway.run(account_id, action, call, scope_key=application_id)
        return {
            "original": cover_letter,
            "refined": outcome.result,
            "refinement_type": refinement_type,
            "credits_remaining": float(outcome.credits_remaining),
            "was_free": outcome.was_free,
            "free_tier": outcome.free_tier.as_dict(),
        }

    # -- smart reply ------------------------------------------------------------

    def generate_reply(
        self,
        credential: Optional[str],
        pasted_message: Any,
        user_instructions: Any = None,
        application_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        message_type: Optional[str] = None,
        sender_profile: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Draft a reply to a recruiter email, or compose an outreach email.

        Follow-ups on an existing conversation keep its message type; a
        compose follow-up rewrites the last drafted email.
        """
        action = ActionType.SMART_REPLY
        account_id = self.gateway.admit(credential, action)

        pasted_message = validate_text(pasted_message, "pasted_message", self.limits)
        user_instructions = validate_optional_text(user_instructions, "Instructions", self.limits)
        if message_type is not None and message_type not in prompts.MESSAGE_TYPES:
            raise InvalidInput(f"Invalid message type. Must be one of: {', '.join(prompts.MESSAGE_TYPES)}")

        application = self._require_application(account_id, application_id) if application_id else None

        previous_email = None
        if conversation_id:
            conversation = self._lookup(
                lambda: self.repository.get_conversation(conversation_id, account_id)
            )
            if conversation is None:
                raise AccessDenied("Conversation not found or access denied")
            message_type = conversation.message_type
            if message_type == "compose":
                previous_email = self._lookup(
                    lambda: self.repository.latest_message(conversation_id, "assistant")
                )
        message_type = message_type or prompts.detect_message_type(pasted_message)

        profile_context = None
        if message_type == "compose":
            profile_context = prompts.format_sender_profile(sender_profile)

        if previous_email:
            system_prompt = prompts.COMPOSE_REWRITE_PROMPT
            user_prompt = prompts.build_compose_rewrite_prompt(
                previous_email, pasted_message, user_instructions, profile_context
            )
        else:
            system_prompt = prompts.build_reply_system_prompt(message_type)
            user_prompt = prompts.build_reply_prompt(
                pasted_message,
                message_type,
                user_instructions,
                {"company": application.company, "role": application.role} if application else None,
                profile_context,
            )

        def call(_account_id: str) -> str:
            completion = self.llm.complete(system_prompt, user_prompt, MAX_TOKENS["reply"])
            if len(completion.text) < MIN_REPLY_LENGTH:
                raise UpstreamInvalidResponse(INVALID_RESPONSE)
            return completion.text

        outcome = self.gateway.run(account_id, action, call)
        reply = outcome.result

        subject, body = (None, reply)
        if message_type == "compose":
            subject, body = split_subject(reply)

        try:
            conversation_id = self._save_conversation(
                account_id=account_id,
                conversation_id=conversation_id,
                message_type=message_type,
                application_id=application_id,
                pasted_message=pasted_message,
                user_instructions=user_instructions,
                subject=subject,
                body=body,
                was_free=outcome.was_free,
            )
        except StorageError:
            # Usage is already recorded, so the reply is returned without history.
            logger.exception("Failed to save conversation for account %s", account_id)

        allowance = self.config.free_tier.get_allowance(FreeTierFeature.REPLIES)
        return {
            "conversation_id": conversation_id,
            "reply": reply,
            "subject": subject,
            "message_type": message_type,
            "credits_remaining": float(outcome.credits_remaining),
            "was_free": outcome.was_free,
            "free_tier": {
                **outcome.free_tier.as_dict(),
                "needs_purchase": outcome.free_tier.needs_purchase,
                "initial_free": allowance.base_allowance,
            },
            "pack_info": self._reply_pack_info(),
        }

    def _save_conversation(
        self,
        account_id: str,
        conversation_id: Optional[str],
        message_type: str,
        application_id: Optional[str],
        pasted_message: str,
        user_instructions: Optional[str],
        subject: Optional[str],
        body: str,
        was_free: bool,
    ) -> str:
        now = self.clock()
        cost = self.config.costs.cost_for(ActionType.SMART_REPLY)
        try:
            if not conversation_id:
                conversation = self.repository.create_conversation(
                    account_id, message_type, now, application_id=application_id
                )
                conversation_id = conversation.conversation_id

            messages: List[ConversationMessage] = [
                ConversationMessage(conversation_id, "pasted", pasted_message, now),
            ]
            if user_instructions:
                messages.append(ConversationMessage(conversation_id, "instruction", user_instructions, now))
            if subject:
                messages.append(ConversationMessage(conversation_id, "subject", subject, now))
            messages.append(
                ConversationMessage(
                    conversation_id, "assistant", body, now, credits_used=Decimal("0") if was_free else cost
                )
            )
            self.repository.add_messages(messages)
        except sqlite3.Error as e:
            raise StorageError("Failed to save conversation") from e
        return conversation_id

    # -- free tier status and packs -----------------------------------------------

    def check_edits(self, credential: Optional[str], application_id: Any) -> Dict[str, Any]:
        """Free edits left on one application."""
        account_id = self.gateway.authenticate(credential)
        if not application_id:
            raise InvalidInput("Application ID is required")
        self._require_application(account_id, application_id)

        status = self.free_tier.check_free_tier(account_id, FreeTierFeature.EDITS, application_id)
        return {
            "free_tier": {
                **status.as_dict(),
                "can_edit": status.is_free,
                "needs_purchase": status.needs_purchase,
            },
        }

    def purchase_edits(self, credential: Optional[str], application_id: Any) -> Dict[str, Any]:
        """Buy one edit pack for an application."""
        account_id = self.gateway.authenticate(credential)
        if not application_id:
            raise InvalidInput("Application ID is required")
        self._require_application(account_id, application_id)

        purchase = self.free_tier.purchase_pack(account_id, FreeTierFeature.EDITS, application_id)
        status = self.free_tier.check_free_tier(account_id, FreeTierFeature.EDITS, application_id)
        return {
            "success": True,
            "credits_remaining": float(purchase.new_balance),
            "edits_remaining": purchase.new_remaining,
            "free_tier": {**status.as_dict(), "can_edit": status.is_free},
        }

    def check_free_replies(self, credential: Optional[str]) -> Dict[str, Any]:
        account_id = self.gateway.authenticate(credential)
        status = self.free_tier.check_free_tier(account_id, FreeTierFeature.REPLIES)
        return {
            "free_tier": {**status.as_dict(), "has_free": status.is_free},
            "credit_cost": float(self.config.costs.cost_for(ActionType.SMART_REPLY)),
        }

    def purchase_replies(self, credential: Optional[str]) -> Dict[str, Any]:
        """Buy one reply pack for the account."""
        account_id = self.gateway.authenticate(credential)
        purchase = self.free_tier.purchase_pack(account_id, FreeTierFeature.REPLIES)
        status = self.free_tier.check_free_tier(account_id, FreeTierFeature.REPLIES)
        return {
            "success": True,
            "credits_remaining": float(purchase.new_balance),
            "replies_remaining": purchase.new_remaining,
            "free_tier": status.as_dict(),
            "pack_info": self._reply_pack_info(),
        }

    # -- applications -------------------------------------------------------------

    def create_application(
        self, credential: Optional[str], company: Any = None, role: Any = None
    ) -> Dict[str, Any]:
        """Register a job application that refinements can be scoped to."""
        account_id = self.gateway.authenticate(credential)
        company = validate_optional_text(company, "Company name", self.limits)
        role = validate_optional_text(role, "Job title", self.limits)
        application = self._lookup(
            lambda: self.repository.create_application(account_id, self.clock(), company, role)
        )
        return {
            "application_id": application.application_id,
            "company": application.company,
            "role": application.role,
        }

    # -- helpers ------------------------------------------------------------------

    def _require_application(self, account_id: str, application_id: str) -> Application:
        application = self._lookup(
            lambda: self.repository.get_application(application_id, account_id)
        )
        if application is None:
            raise AccessDenied("Application not found or access denied")
        return application

    @staticmethod
    def _lookup(read: Callable[[], Any]) -> Any:
        try:
            return read()
        except sqlite3.Error as e:
            raise StorageError("Failed to load data") from e

    def _reply_pack_info(self) -> Dict[str, Any]:
        allowance = self.config.free_tier.get_allowance(FreeTierFeature.REPLIES)
        return {
            "cost": float(allowance.pack_cost),
            "replies_per_pack": allowance.pack_size,
        }


def _is_complete(generated: Any, output_type: str) -> bool:
    """Check the generated JSON has the fields the output type promises."""
    if not isinstance(generated, dict):
        return False
    if output_type in ("full", "cv") and not isinstance(generated.get("tailored_bullets"), list):
        return False
    if output_type in ("full", "cover") and not generated.get("cover_letter"):
        return False
    return bool(generated.get("keyword_analysis"))
