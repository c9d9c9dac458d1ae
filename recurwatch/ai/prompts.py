"""
Prompt Templates

Shared by every backend so that Gemini and a local model are asked
exactly the same questions.
"""

from recurwatch.ai.interface import ClassificationContext


CLASSIFY_SUBSCRIPTION_PROMPT = """You are reviewing recurring charges in a personal finance app.

Decide whether the merchant below is a SUBSCRIPTION SERVICE: a product the
user signed up for and is billed for on a schedule (streaming, software,
memberships, cloud storage, news, gyms, phone plans).

Regular purchases that merely repeat (groceries, fuel, restaurants, transfers,
ride sharing) are NOT subscriptions, however regular they look.

Merchant: {merchant}
{context}

Respond with ONLY a JSON object in this exact format:
{{"is_subscription": true, "confidence": 0.9, "reason": "brief explanation", "category": "streaming"}}

Use a short lowercase category (streaming, music, cloud_storage, news, fitness,
software, gaming, food_delivery, phone, other) or null if not a subscription.
Be conservative - if unsure, lower the confidence."""


ANALYZE_DUPLICATES_PROMPT = """A user pays for several {category} services at the same time: {services}.

Explain briefly what these services have in common, then what each offers
that the others don't. Answer in exactly this format:

OVERLAP: <one sentence on what they share>
SERVICE: <service name>
UNIQUE: <one sentence on what only it offers>
(repeat SERVICE/UNIQUE for each service)"""


VERIFY_SYSTEM_PROMPT = """You verify alerts raised by a subscription detector.

You can look at the user's data ONLY through these read-only tools:
{tools}

To call a tool, reply with ONLY a JSON object:
{{"tool": "<tool name>", "arguments": {{...}}}}

You may call at most {max_tool_calls} tools. Never guess at data you have not
fetched. When you are done, reply with exactly:

VERDICT: CONFIRMED | REJECTED | UNCERTAIN
EXPLANATION: <two or three sentences for the user, citing the data>"""


def render_classification_prompt(merchant: str, context: ClassificationContext) -> str:
    return CLASSIFY_SUBSCRIPTION_PROMPT.format(
        merchant=merchant,
        context=context.describe(),
    )


def render_duplicates_prompt(category: str, services: list[str]) -> str:
    return ANALYZE_DUPLICATES_PROMPT.format(
        category=category,
        services=", ".join(services),
    )
