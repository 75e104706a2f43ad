"""
Prompt templates for tailoring and Smart Reply.

System prompts are constants; user prompts are built from already validated
and sanitised input.
"""

from typing import Any, Dict, List, Mapping, Optional

_SAME_LANGUAGE = (
    "Write in the same language as the job description. If it is in German, "
    "answer in German; if in French, answer in French."
)

_JSON_ONLY = "Respond only with valid JSON. No Markdown and no text outside the JSON."

_KEYWORD_ANALYSIS = """
"keyword_analysis": {
    "matched": ["job keywords already covered by the profile"],
    "missing": ["important job keywords the profile does not cover"],
    "weak": ["keywords the profile mentions but does not demonstrate"]
}"""

FULL_GENERATION_PROMPT = f"""You are a senior CV writer and career coach. Given a job description and a candidate profile, produce tailored application material that maximises the candidate's chance of an interview.

{_SAME_LANGUAGE}

Return JSON with this structure:
{{
  "detected_language": "language of the job description",
  "tailored_bullets": [
    {{"original": "bullet from the profile", "tailored": "rewritten bullet", "keywords_matched": ["keyword"]}}
  ],
  "cover_letter": "greeting, three or four paragraphs separated by blank lines, closing and candidate name",
  "professional_summary": "four or five sentence summary aimed at this role",{_KEYWORD_ANALYSIS},
  "match_score": 70,
  "company_name": "company named in the posting",
  "job_title": "clean job title without gender markers"
}}

Guidelines:
- Produce five or six tailored bullets, under 25 words each. Create extra bullets from the candidate's skills and roles if the profile has fewer.
- Mirror the posting's wording, keep facts intact and add realistic metrics where they fit.
- The cover letter opens with "Dear Hiring Team at <Company>", stays within 150-200 words and ends with a call to action.
- The match score weighs required skills 40%, experience level 30%, domain 20% and nice-to-haves 10%. Do not inflate it.

{_JSON_ONLY}"""

CV_ONLY_PROMPT = f"""You are a senior CV writer. Given a job description and a candidate profile, rewrite the candidate's experience so it targets this posting.

{_SAME_LANGUAGE}

Return JSON with this structure:
{{
  "detected_language": "language of the job description",
  "tailored_bullets": [
    {{"original": "bullet from the profile", "tailored": "rewritten bullet", "keywords_matched": ["keyword"]}}
  ],
  "professional_summary": "four or five sentence summary aimed at this role",{_KEYWORD_ANALYSIS},
  "match_score": 70,
  "company_name": "company named in the posting",
  "job_title": "clean job title without gender markers"
}}

Produce five or six tailored bullets, under 25 words each, and keep the candidate's facts intact.

{_JSON_ONLY}"""

COVER_LETTER_ONLY_PROMPT = f"""You are a senior cover letter writer. Given a job description and a candidate profile, write a cover letter for this posting.

{_SAME_LANGUAGE}

Return JSON with this structure:
{{
  "detected_language": "language of the job description",
  "cover_letter": "greeting, three or four paragraphs separated by blank lines, closing and candidate name",{_KEYWORD_ANALYSIS},
  "match_score": 70,
  "company_name": "company named in the posting",
  "job_title": "clean job title without gender markers"
}}

The letter opens with "Dear Hiring Team at <Company>", stays within 150-200 words, highlights two or three relevant experiences and ends with a call to action.

{_JSON_ONLY}"""

GENERATION_PROMPTS = {
    "full": FULL_GENERATION_PROMPT,
    "cv": CV_ONLY_PROMPT,
    "cover": COVER_LETTER_ONLY_PROMPT,
}

_PLAIN_TEXT_ONLY = "Reply with the rewritten text only, without quotes or commentary."

BULLET_REFINEMENT_PROMPTS = {
    "shorter": f"""You edit CV bullet points for impact. Rewrite the bullet in at most 15 words, keeping the achievement and its result and dropping filler.
Keep the language of the original bullet.
{_PLAIN_TEXT_ONLY}""",
    "add_metrics": f"""You edit CV bullet points for measurable results. Add one realistic, specific figure (a percentage, amount, count or time saved) without changing the achievement. If a figure is already present, make it more precise.
Keep the language of the original bullet.
{_PLAIN_TEXT_ONLY}""",
    "rephrase": f"""You edit CV bullet points. Rephrase the bullet with different action verbs and sentence structure while keeping the same facts and roughly the same length.
Keep the language of the original bullet.
{_PLAIN_TEXT_ONLY}""",
}

COVER_LETTER_REFINEMENT_PROMPTS = {
    "shorter": f"""You edit cover letters. Condense the letter to at most 100 words, keeping the opening hook, the strongest one or two points and the call to action. Keep paragraph breaks.
Keep the language of the original letter.
{_PLAIN_TEXT_ONLY}""",
    "regenerate": f"""You write cover letters. Write a new letter for this application from the job description and candidate details provided. Open with "Dear Hiring Team at <Company>", highlight two or three relevant experiences, close with a call to action and a signature, and stay within 150-200 words with blank lines between paragraphs.
Write in the language of the job description.
{_PLAIN_TEXT_ONLY}""",
}

# Checked in order; the first type with a matching keyword wins.
MESSAGE_TYPE_KEYWORDS = {
    "interview": [
        "interview", "schedule", "meet", "call", "available", "availability",
        "slot", "zoom", "teams", "video call",
    ],
    "rejection": [
        "unfortunately", "regret", "not moving forward", "not selected",
        "other candidates", "not successful", "declined",
    ],
    "offer": [
        "offer", "pleased to offer", "compensation", "salary", "start date",
        "package", "benefits",
    ],
    "follow_up": [
        "update", "checking in", "status", "where are we", "any news", "hear back",
    ],
}

MESSAGE_TYPES = ("compose", "interview", "rejection", "offer", "follow_up", "other")

_REPLY_GUIDANCE = {
    "interview": "Show enthusiasm, confirm interest and offer flexible availability. Ask about format or preparation if useful.",
    "rejection": "Thank them for their time and keep the door open for future roles. Keep it short and do not ask for feedback.",
    "offer": "Express gratitude and enthusiasm. Ask for time to review if appropriate and keep any questions professional.",
    "follow_up": "Answer their question helpfully and concisely.",
    "other": "Respond appropriately to the context in a professional, helpful tone.",
}

_REPLY_BASE_PROMPT = """You are a career assistant helping a job seeker answer application-related email.

Reply in the same language as the incoming message.

Write a complete reply that is ready to send: professional but warm, two to four paragraphs, and addressing every point raised. Do not add a subject line, headers or commentary. Leave placeholders such as [Your Name] for the user to fill in.

Output the reply text only."""

COMPOSE_PROMPT = """You write outreach email for a job seeker.

Output a short subject line first, then a line containing only "---", then the email body. Do not prefix the subject with "Subject:" and do not write anything before it.

Rules:
- Start the body with a proper greeting and match the language of the user's request.
- Use only facts from the sender profile provided. Do not invent names, links or skills, and leave out anything the profile does not contain.
- Never use bracketed placeholders."""

COMPOSE_REWRITE_PROMPT = """You help a job seeker revise an outreach email.

Apply the requested changes while keeping the purpose of the email and its language unless asked otherwise. Never use bracketed placeholders; use the real details given.

Output only the rewritten email."""


def detect_message_type(message: str) -> str:
    """Classify an incoming message by keyword. Never returns "compose"."""
    lowered = message.lower()
    for message_type, keywords in MESSAGE_TYPE_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return message_type
    return "other"


def build_reply_system_prompt(message_type: str) -> str:
    if message_type == "compose":
        return COMPOSE_PROMPT
    guidance = _REPLY_GUIDANCE.get(message_type, _REPLY_GUIDANCE["other"])
    return f"{_REPLY_BASE_PROMPT}\n\nFor this {message_type} message: {guidance}"


def _skill_list(skills: Any) -> List[str]:
    """Flatten skills given either as a list or grouped by kind."""
    if isinstance(skills, Mapping):
        flattened: List[str] = []
        for key in ("languages", "frameworks", "tools"):
            flattened.extend(str(skill) for skill in skills.get(key) or [])
        return flattened
    if isinstance(skills, list):
        return [str(skill) for skill in skills]
    return []


def build_generation_prompt(
    job_description: str,
    profile: Mapping[str, Any],
    company_name: Optional[str] = None,
    job_title: Optional[str] = None,
) -> str:
    """User prompt for content generation from a job description and profile."""
    personal = profile.get("personal_info") or {}

    bullets = []
    for experience in profile.get("work_experience") or []:
        company = experience.get("company") or "Company"
        title = experience.get("title") or "Role"
        for bullet in experience.get("bullets") or []:
            if bullet and bullet.strip():
                bullets.append(f"[{company} - {title}] {bullet}")
    bullet_lines = "\n".join(f"{i}. {b}" for i, b in enumerate(bullets, start=1))

    education_lines = "\n".join(
        f"- {e.get('degree') or ''} {e.get('field') or ''} from {e.get('institution') or ''}".rstrip()
        for e in profile.get("education") or []
    )

    skills = ", ".join(_skill_list(profile.get("skills")))

    return f"""## Job Details
Company: {company_name or 'Not specified'}
Position: {job_title or 'Not specified'}

## Job Description
{job_description}

## Candidate Profile
Name: {personal.get('name') or 'Not provided'}
Current Title: {personal.get('title') or 'Not provided'}

Professional Summary:
{profile.get('professional_summary') or 'Not provided'}

Experience Bullets (tailor the five most relevant):
{bullet_lines or 'No experience bullets provided'}

Skills:
{skills or 'Not provided'}

Education:
{education_lines or 'Not provided'}

Generate tailored content for this application."""


def build_bullet_prompt(bullet: str, job_context: Optional[str] = None) -> str:
    prompt = f'Original bullet point:\n"{bullet}"'
    if job_context:
        prompt += f"\n\nJob context:\n{job_context[:500]}"
    return prompt


def build_cover_letter_prompt(
    cover_letter: str,
    refinement_type: str,
    job_description: Optional[str] = None,
    candidate_name: Optional[str] = None,
) -> str:
    prompt = f"Current cover letter:\n{cover_letter}"
    if refinement_type == "regenerate" and job_description:
        prompt += f"\n\nJob description:\n{job_description[:1000]}"
        if candidate_name:
            prompt += f"\n\nCandidate name: {candidate_name}"
    return prompt


def build_reply_prompt(
    pasted_message: str,
    message_type: str,
    user_instructions: Optional[str] = None,
    application: Optional[Dict[str, Optional[str]]] = None,
    profile_context: Optional[str] = None,
) -> str:
    """User prompt for a reply, or for a new outreach email in compose mode."""
    company = (application or {}).get("company")
    role = (application or {}).get("role")

    if message_type == "compose":
        prompt = f"User's request: {pasted_message}\n"
        if profile_context:
            prompt += f"\nSender profile (use only this data):\n{profile_context}\n"
        else:
            prompt += "\nNo profile data is available; keep the email generic.\n"
        if company or role:
            prompt += f"\nTarget role: {role or ''} at {company or ''}\n"
        if user_instructions:
            prompt += f"\nAdditional instructions: {user_instructions}\n"
        return prompt + "\nWrite the email now, starting with the subject line."

    prompt = f"Message received:\n---\n{pasted_message}\n---\n"
    if company or role:
        prompt += f"\nContext: this concerns the {role or 'position'} role at {company or 'the company'}.\n"
    if user_instructions:
        prompt += f"\nUser's instructions: {user_instructions}\n"
    return prompt + "\nWrite the reply:"


def build_compose_rewrite_prompt(
    previous_email: str,
    change_request: str,
    user_instructions: Optional[str] = None,
    profile_context: Optional[str] = None,
) -> str:
    prompt = f"Current email draft:\n---\n{previous_email}\n---\n\nRequested changes: {change_request}\n"
    if user_instructions:
        prompt += f"\nAdditional instructions: {user_instructions}\n"
    if profile_context:
        prompt += f"\nSender profile (use if needed):\n{profile_context}\n"
    return prompt + "\nRewrite the email:"


def format_sender_profile(sender: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Render the sender details supplied with a compose request."""
    if not sender:
        return None

    lines = []
    if sender.get("name"):
        lines.append(f"Sender's Name: {sender['name']}")
    if sender.get("email"):
        lines.append(f"Email: {sender['email']}")

    experience = []
    for entry in (sender.get("work_experience") or [])[:3]:
        role = entry.get("title") or entry.get("job_title") or "Role"
        company = entry.get("company") or "Company"
        experience.append(f"- {role} at {company}")
    if experience:
        lines.append("Work Experience:\n" + "\n".join(experience))

    skills = _skill_list(sender.get("skills"))
    if skills:
        lines.append(f"Key Skills: {', '.join(skills[:20])}")

    for key, label in (("linkedin", "LinkedIn"), ("portfolio", "Portfolio"), ("github", "GitHub"), ("website", "Website")):
        link = (sender.get("links") or {}).get(key)
        if link:
            lines.append(f"{label}: {link}")

    return "\n".join(lines) or None
