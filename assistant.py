"""Tech Sahayak, the storefront shopping assistant.

The hosted model is asked to answer with one JSON object whose ``type`` picks
a catalog lookup; this module drives a Gemini chat session and turns the reply
into that object. Catalog lookups themselves are done by the caller.
"""
import json
import logging
import time

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

logger = logging.getLogger(__name__)

REPLY_TYPES = (
    "product_search",
    "category_search",
    "recommendations",
    "flash_sale",
    "order_tracking",
    "text",
)

FALLBACK_MESSAGE = (
    "দুঃখিত, আমাদের সহায়ক এই মুহূর্তে ব্যস্ত। Sorry, our assistant is busy right now. "
    "Please try again in a moment."
)
UNREADABLE_MESSAGE = "I'm sorry, I didn't understand that. Can you please rephrase?"

SYSTEM_PROMPT = """You are Tech Sahayak (টেক সহায়ক), the shopping assistant of the Tech Nirvor (টেক নির্ভর) online store.
This chat was built by Tech Nirvor. Never mention large language models, Google or any other third party.
Only help with this store: finding products, suggesting products, flash sales, combo offers and order tracking.
Politely decline anything unrelated. Reply in English, Bangla or Banglish, matching the user's language.
Be friendly and brief. If the user only greets you, greet back in Bangla and ask how you can help.

Always answer with exactly one JSON object and nothing else, using one of these shapes:
{"type": "product_search", "query": "<product name or keywords>"}
{"type": "category_search", "category": "<category name>"}
{"type": "recommendations"}
{"type": "flash_sale"}
{"type": "order_tracking", "order_number": "<order number like TN-DH-123456, or empty if unknown>"}
{"type": "text", "message": "<your reply>"}

Examples:
User: "Show me laptops" -> {"type": "product_search", "query": "laptops"}
User: "headphone category ta dekhao" -> {"type": "category_search", "category": "headphones"}
User: "ki ki offer ache?" -> {"type": "flash_sale"}
User: "amar order kothay?" -> {"type": "order_tracking", "order_number": ""}
"""

GENERATION_CONFIG = {
    "temperature": 0.7,
    "top_p": 0.95,
    "top_k": 64,
    "max_output_tokens": 8192,
    "response_mime_type": "application/json",
}


class AssistantError(Exception):
    pass


class AssistantUnavailable(AssistantError):
    """Upstream kept answering 503 after every retry."""


def build_history(history):
    """Earlier turns as Gemini chat history, dropping anything without text."""
    turns = []
    for turn in history or []:
        if not isinstance(turn, dict):
            continue
        role = "model" if turn.get("role") in ("model", "assistant", "bot") else "user"
        parts = turn.get("parts")
        if isinstance(parts, list):
            texts = []
            for part in parts:
                if isinstance(part, dict) and part.get("text"):
                    texts.append({"text": str(part["text"])})
                elif isinstance(part, str) and part:
                    texts.append({"text": part})
        else:
            text = turn.get("text") or turn.get("content") or ""
            texts = [{"text": str(text)}] if text else []
        if texts:
            turns.append({"role": role, "parts": texts})
    return turns


def build_model(api_key: str, model: str):
    genai.configure(api_key=api_key)
    return genai.GenerativeModel(
        model,
        system_instruction=SYSTEM_PROMPT,
        generation_config=GENERATION_CONFIG,
    )


def _response_text(response) -> str:
    try:
        text = response.text
    except (ValueError, AttributeError, IndexError) as exc:
        # blocked or empty candidates
        raise AssistantError("Empty response from model") from exc
    if not text:
        raise AssistantError("Empty response from model")
    return text


def generate_reply(
    history,
    message: str,
    api_key: str,
    model: str = "gemini-1.5-flash",
    max_retries: int = 2,
    retry_delay: float = 1.0,
    timeout: float = 20.0,
    sleep=time.sleep,
) -> str:
    """Send the conversation upstream and return the model's raw text.

    A 503 is retried ``max_retries`` times, waiting ``retry_delay * attempt``
    seconds before each retry.
    """
    chat = build_model(api_key, model).start_chat(history=build_history(history))
    attempt = 0
    while True:
        try:
            response = chat.send_message(message, request_options={"timeout": timeout})
        except google_exceptions.ServiceUnavailable as exc:
            if attempt >= max_retries:
                logger.warning("Assistant upstream overloaded after %s retries", attempt)
                raise AssistantUnavailable("Model overloaded") from exc
            attempt += 1
            logger.info("Assistant upstream overloaded, retry %s/%s", attempt, max_retries)
            sleep(retry_delay * attempt)
            continue
        except google_exceptions.GoogleAPIError as exc:
            logger.error("Assistant upstream error: %s", exc)
            raise AssistantError(f"Upstream error: {exc}") from exc
        except (genai.types.BlockedPromptException, genai.types.StopCandidateException) as exc:
            logger.warning("Assistant reply blocked: %s", exc)
            raise AssistantError("Reply blocked") from exc
        except (TimeoutError, ConnectionError) as exc:
            logger.error("Assistant upstream unreachable: %s", exc)
            raise AssistantError("Upstream unreachable") from exc
        return _response_text(response)


def parse_reply(text: str):
    """Decode the model's JSON answer; ``None`` when it is not one of ``REPLY_TYPES``."""
    if not text:
        return None
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        data = json.loads(cleaned)
    except ValueError:
        logger.warning("Assistant reply is not JSON: %.200s", text)
        return None
    if not isinstance(data, dict) or data.get("type") not in REPLY_TYPES:
        return None
    if data["type"] == "product_search" and not str(data.get("query") or "").strip():
        return None
    if data["type"] == "category_search" and not str(data.get("category") or "").strip():
        return None
    if data["type"] == "text" and not str(data.get("message") or "").strip():
        return None
    return data
