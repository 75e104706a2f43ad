"""
Unit tests for the tailoring operations.

The completion client is mocked; everything else runs against a real
temporary database.
"""

import json
import sqlite3
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from credit_gate.core import prompts
from credit_gate.core.actions import ActionCategory
from credit_gate.core.errors import AccessDenied, InsufficientCredits, InvalidInput, UpstreamInvalidResponse
from credit_gate.core.tailoring import TailoringService, split_subject
from credit_gate.sdk.llm_client import Completion, CompletionClient

JOB_DESCRIPTION = (
    "Acme is hiring a data engineer to build batch pipelines in Python and SQL "
    "on a modern warehouse stack."
)
PROFILE = {
    "personal_info": {"name": "Sam Lee", "title": "Analyst"},
    "work_experience": [
        {"company": "Initech", "title": "Analyst", "bullets": ["Built weekly revenue reports in SQL"]},
    ],
    "skills": ["Python", "SQL"],
}
GENERATED = {
    "tailored_bullets": [{"original": "Built weekly revenue reports in SQL", "tailored": "Automated revenue reporting"}],
    "cover_letter": "Dear Hiring Team at Acme, ...",
    "keyword_analysis": {"matched": ["Python", "SQL"], "missing": ["dbt"]},
}
BULLET = "Managed a team that shipped the billing system"
COVER_LETTER = "Dear Hiring Team, I am excited to apply for the data engineer role at Acme."
REPLY = "Thank you for reaching out. Monday at 10 works well for me."


@pytest.fixture
def llm():
    client = Mock(spec=CompletionClient)
    client.complete.return_value = Completion(text=REPLY, input_tokens=50, output_tokens=20)
    return client


@pytest.fixture
def service(stack, llm):
    return TailoringService(stack.gateway, stack.repository, llm, stack.config, clock=stack.clock)


@pytest.fixture
def application_id(service, bearer):
    return service.create_application(bearer("user-1"), company="Acme", role="Data Engineer")["application_id"]


def _fund(stack, credits, account_id="user-1"):
    stack.ledger.grant(account_id, Decimal(credits), reference=f"seed-{account_id}-{credits}")


class TestGenerateContent:
    """Test content generation."""

    def test_full_generation(self, service, stack, llm, bearer):
        _fund(stack, "2.0")
        llm.complete.return_value = Completion(text=json.dumps(GENERATED), input_tokens=900, output_tokens=600)

        result = service.generate_content(bearer("user-1"), JOB_DESCRIPTION, PROFILE, "full", "Acme")

        assert result["cover_letter"] == GENERATED["cover_letter"]
        assert result["tailored_bullets"] == GENERATED["tailored_bullets"]
        assert result["credits_remaining"] == 1.0
        assert result["tokens_used"] == {"input": 900, "output": 600}
        system_prompt, _, max_tokens = llm.complete.call_args[0]
        assert system_prompt == prompts.FULL_GENERATION_PROMPT
        assert max_tokens == 2048

    def test_incomplete_output_is_refunded(self, service, stack, llm, bearer):
        _fund(stack, "2.0")
        llm.complete.return_value = Completion(text=json.dumps({"keyword_analysis": {"matched": []}}))

        with pytest.raises(UpstreamInvalidResponse, match="incomplete"):
            service.generate_content(bearer("user-1"), JOB_DESCRIPTION, PROFILE, "cv")

        assert stack.ledger.get_balance("user-1") == Decimal("2.0")
        assert stack.repository.count_usage_events("user-1", "generation") == 0

    def test_cover_only_needs_no_bullets(self, service, stack, llm, bearer):
        _fund(stack, "1.0")
        generated = {"cover_letter": "Dear Hiring Team", "keyword_analysis": {"matched": ["SQL"]}}
        llm.complete.return_value = Completion(text="```json\n" + json.dumps(generated) + "\n```")

        result = service.generate_content(bearer("user-1"), JOB_DESCRIPTION, PROFILE, "cover")

        assert result["credits_remaining"] == 0.75

    def test_invalid_output_type(self, service, stack, llm, bearer):
        _fund(stack, "2.0")
        with pytest.raises(InvalidInput, match="Invalid output type"):
            service.generate_content(bearer("user-1"), JOB_DESCRIPTION, PROFILE, "resume")

        llm.complete.assert_not_called()
        assert stack.ledger.get_balance("user-1") == Decimal("2.0")

    def test_profile_required(self, service, llm, bearer):
        with pytest.raises(InvalidInput, match="Profile must include"):
            service.generate_content(bearer("user-1"), JOB_DESCRIPTION, {"personal_info": {}})
        llm.complete.assert_not_called()

    def test_insufficient_credits(self, service, stack, llm, bearer):
        _fund(stack, "0.5")
        with pytest.raises(InsufficientCredits):
            service.generate_content(bearer("user-1"), JOB_DESCRIPTION, PROFILE)
        llm.complete.assert_not_called()

    def test_markup_only_job_description_is_not_charged(self, service, stack, llm, bearer):
        _fund(stack, "2.0")
        markup = "<div class='job-posting-section-wrapper'></div>" * 2

        with pytest.raises(InvalidInput, match="Job description is required"):
            service.generate_content(bearer("user-1"), markup, {"skills": ["python"]})

        llm.complete.assert_not_called()
        assert stack.ledger.get_balance("user-1") == Decimal("2.0")
        assert stack.repository.count_usage_events("user-1", "generation") == 0


class TestRefinements:
    """Test bullet and cover-letter refinement."""

    def test_free_bullet_refinement(self, service, llm, bearer, application_id):
        llm.complete.return_value = Completion(text="Led a 6-person team shipping billing")

        result = service.refine_bullet(bearer("user-1"), application_id, BULLET, "shorter")

        assert result["original"] == BULLET
        assert result["refined"] == "Led a 6-person team shipping billing"
        assert result["was_free"] is True
        assert result["free_tier"] == {"remaining": 4, "total": 5, "used": 1}
        assert llm.complete.call_args[0][0] == prompts.BULLET_REFINEMENT_PROMPTS["shorter"]

    def test_sixth_refinement_is_charged(self, service, stack, llm, bearer, application_id):
        _fund(stack, "1.0")
        for _ in range(5):
            stack.rate_limiter.record_usage("user-1", ActionCategory.REFINEMENT, application_id)
        llm.complete.return_value = Completion(text="Led a 6-person team shipping billing")

        result = service.refine_bullet(bearer("user-1"), application_id, BULLET, "add_metrics")

        assert result["was_free"] is False
        assert result["credits_remaining"] == 0.75
        assert result["free_tier"]["remaining"] == 0

    def test_other_users_application(self, service, stack, llm, bearer, application_id):
        with pytest.raises(AccessDenied, match="Application not found or access denied"):
            service.refine_bullet(bearer("user-2"), application_id, BULLET, "rephrase")
        llm.complete.assert_not_called()

    def test_application_required(self, service, bearer):
        with pytest.raises(InvalidInput, match="Application ID is required"):
            service.refine_bullet(bearer("user-1"), None, BULLET, "rephrase")

    def test_short_response_not_counted(self, service, stack, llm, bearer, application_id):
        llm.complete.return_value = Completion(text="Led team")

        with pytest.raises(UpstreamInvalidResponse):
            service.refine_bullet(bearer("user-1"), application_id, BULLET, "rephrase")

        assert stack.repository.count_usage_events("user-1", "refinement") == 0

    def test_regenerate_requires_job_description(self, service, bearer, application_id):
        with pytest.raises(InvalidInput, match="Job description is required for regeneration"):
            service.refine_cover_letter(bearer("user-1"), application_id, COVER_LETTER, "regenerate")

    def test_cover_letter_regenerate(self, service, llm, bearer, application_id):
        llm.complete.return_value = Completion(text="Dear Hiring Team at Acme, " + "x" * 60)

        result = service.refine_cover_letter(
            bearer("user-1"), application_id, COVER_LETTER, "regenerate",
            job_description=JOB_DESCRIPTION, candidate_name="Sam Lee",
        )

        assert result["refinement_type"] == "regenerate"
        assert result["was_free"] is True
        user_prompt = llm.complete.call_args[0][1]
        assert "Candidate name: Sam Lee" in user_prompt

    def test_invalid_cover_letter_refinement(self, service, bearer, application_id):
        with pytest.raises(InvalidInput, match="shorter or regenerate"):
            service.refine_cover_letter(bearer("user-1"), application_id, COVER_LETTER, "longer")


class TestSmartReply:
    """Test replies, compose mode and conversation storage."""

    def test_first_reply_is_free_and_saved(self, service, stack, bearer):
        result = service.generate_reply(bearer("user-1"), "Can we schedule an interview on Monday?")

        assert result["reply"] == REPLY
        assert result["message_type"] == "interview"
        assert result["subject"] is None
        assert result["was_free"] is True
        assert result["free_tier"] == {
            "remaining": 2, "total": 3, "used": 1, "needs_purchase": False, "initial_free": 3,
        }
        assert result["pack_info"] == {"cost": 0.1, "replies_per_pack": 5}

        messages = stack.repository.fetch_messages(result["conversation_id"])
        assert [m.role for m in messages] == ["pasted", "assistant"]
        assert messages[1].credits_used == Decimal("0")

    def test_fourth_reply_is_charged(self, service, stack, bearer):
        _fund(stack, "1.0")
        for _ in range(3):
            stack.rate_limiter.record_usage("user-1", ActionCategory.REPLY)

        result = service.generate_reply(
            bearer("user-1"), "Unfortunately we went with other candidates.", user_instructions="Keep it brief"
        )

        assert result["was_free"] is False
        assert result["credits_remaining"] == 0.9
        assert result["free_tier"]["needs_purchase"] is True
        messages = stack.repository.fetch_messages(result["conversation_id"])
        assert [m.role for m in messages] == ["pasted", "instruction", "assistant"]
        assert messages[-1].credits_used == Decimal("0.1")

    def test_reply_returned_when_history_save_fails(self, service, stack, bearer):
        _fund(stack, "1.0")
        for _ in range(3):
            stack.rate_limiter.record_usage("user-1", ActionCategory.REPLY)

        with patch.object(stack.repository, "add_messages", side_effect=sqlite3.OperationalError("disk I/O error")):
            result = service.generate_reply(bearer("user-1"), "Can we schedule an interview on Monday?")

        assert result["reply"] == REPLY
        assert result["conversation_id"] is None
        assert result["credits_remaining"] == 0.9
        assert stack.ledger.get_balance("user-1") == Decimal("0.9")
        assert stack.repository.count_usage_events("user-1", "reply") == 4

    def test_compose_then_rewrite(self, service, stack, llm, bearer):
        llm.complete.return_value = Completion(text="Data engineer opening\n---\nHi Jordan, I saw the opening at Acme.")

        first = service.generate_reply(
            bearer("user-1"), "Write to the hiring manager at Acme about the data role",
            message_type="compose", sender_profile={"name": "Sam Lee"},
        )

        assert first["subject"] == "Data engineer opening"
        assert llm.complete.call_args[0][0] == prompts.COMPOSE_PROMPT
        assert "Sender's Name: Sam Lee" in llm.complete.call_args[0][1]

        llm.complete.return_value = Completion(text="Hi Jordan, short version of the note about Acme.")
        second = service.generate_reply(
            bearer("user-1"), "Make it shorter and less formal", conversation_id=first["conversation_id"],
        )

        assert second["conversation_id"] == first["conversation_id"]
        assert second["message_type"] == "compose"
        system_prompt, user_prompt, _ = llm.complete.call_args[0]
        assert system_prompt == prompts.COMPOSE_REWRITE_PROMPT
        assert "Hi Jordan, I saw the opening at Acme." in user_prompt

    def test_unknown_conversation(self, service, llm, bearer):
        with pytest.raises(AccessDenied, match="Conversation not found"):
            service.generate_reply(bearer("user-1"), "Any news on my application please?", conversation_id="nope")
        llm.complete.assert_not_called()

    def test_invalid_message_type(self, service, bearer):
        with pytest.raises(InvalidInput, match="Invalid message type"):
            service.generate_reply(bearer("user-1"), "Any news on my application please?", message_type="spam")

    def test_split_subject(self):
        assert split_subject("Hello\n---\nBody") == ("Hello", "Body")
        assert split_subject("Body only") == (None, "Body only")


class TestFreeTierEndpoints:
    """Test status checks and pack purchases."""

    def test_check_and_purchase_edits(self, service, stack, bearer, application_id):
        _fund(stack, "1.0")
        for _ in range(5):
            stack.rate_limiter.record_usage("user-1", ActionCategory.REFINEMENT, application_id)

        status = service.check_edits(bearer("user-1"), application_id)
        assert status["free_tier"]["can_edit"] is False
        assert status["free_tier"]["needs_purchase"] is True

        purchase = service.purchase_edits(bearer("user-1"), application_id)
        assert purchase["success"] is True
        assert purchase["credits_remaining"] == 0.75
        assert purchase["edits_remaining"] == 5
        assert purchase["free_tier"]["can_edit"] is True

    def test_check_and_purchase_replies(self, service, stack, bearer):
        _fund(stack, "0.5")

        status = service.check_free_replies(bearer("user-1"))
        assert status == {"free_tier": {"remaining": 3, "total": 3, "used": 0, "has_free": True}, "credit_cost": 0.1}

        purchase = service.purchase_replies(bearer("user-1"))
        assert purchase["replies_remaining"] == 8
        assert purchase["credits_remaining"] == 0.4
        assert purchase["pack_info"] == {"cost": 0.1, "replies_per_pack": 5}

    def test_purchase_without_credits(self, service, bearer):
        with pytest.raises(InsufficientCredits):
            service.purchase_replies(bearer("user-1"))
