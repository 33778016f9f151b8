from typing import Any, Dict, List, Optional

import google.generativeai as genai

from .config import DEFAULT_MODEL


class GeminiResponder:
    """
    Reply generator for incoming chat messages. History is supplied by the caller
    from the conversation store so replies survive restarts.
    """

    def __init__(self, api_key: str, model_name: Optional[str] = None):
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY is not set")
        genai.configure(api_key=api_key)
        self.model_name = model_name or DEFAULT_MODEL
        self.model = genai.GenerativeModel(self.model_name)

    def generate(self, user_text: str, system_prompt: Optional[str] = None, history: Optional[List[Dict[str, Any]]] = None) -> str:
        # Build parts: system, history turns, current user, and assistant cue
        parts: List[object] = []
        if system_prompt:
            parts.append({"text": system_prompt.strip()})
        for h in history or []:
            prefix = "User" if h.get("sender") == "user" else "Assistant"
            parts.append({"text": f"{prefix}: {h.get('content', '')}"})
        parts.append({"text": f"User: {user_text.strip()}"})
        parts.append({"text": "Assistant:"})

        resp = self.model.generate_content(parts)
        try:
            text = resp.text or ""
        except ValueError:
            # Blocked or multi-part responses have no quick accessor
            try:
                text = "".join(p.text for p in resp.candidates[0].content.parts)
            except (AttributeError, IndexError):
                text = ""
        return text.strip() or "Thanks for your message."
