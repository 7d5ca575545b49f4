# app/llm/service/provider/gemini_format.py
"""
Gemini wire format (shared by the direct Gemini API and Vertex AI, which speak
the same generateContent body).
"""

from typing import Any, Dict, List, Optional

from app.core.errors import SafetyBlocked
from app.llm.entity.chat import ChatPart, ChatRequest, ChatResponse, FinishReason, Usage
from app.llm.service.streaming import FrameDelta

HARM_CATEGORIES = (
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

SAFETY_THRESHOLDS = {
    "permissive": "BLOCK_ONLY_HIGH",
    "standard": "BLOCK_MEDIUM_AND_ABOVE",
    "strict": "BLOCK_LOW_AND_ABOVE",
}

DEFAULT_SAFETY_PRESET = "permissive"

FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.MAX_TOKENS,
    "SAFETY": FinishReason.SAFETY,
    "RECITATION": FinishReason.RECITATION,
    "PROHIBITED_CONTENT": FinishReason.SAFETY,
    "BLOCKLIST": FinishReason.SAFETY,
    "SPII": FinishReason.SAFETY,
    "IMAGE_SAFETY": FinishReason.SAFETY,
    "MALFORMED_FUNCTION_CALL": FinishReason.OTHER,
    "OTHER": FinishReason.OTHER,
    "FINISH_REASON_UNSPECIFIED": FinishReason.OTHER,
}

# vendor finish reasons that mean the output was withheld
BLOCKING_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY"}


def safety_settings(preset: Optional[str]) -> List[Dict[str, str]]:
    threshold = SAFETY_THRESHOLDS[preset or DEFAULT_SAFETY_PRESET]
    return [{"category": category, "threshold": threshold} for category in HARM_CATEGORIES]


def _part_to_wire(part: ChatPart) -> Dict[str, Any]:
    if part.text is not None:
        return {"text": part.text}
    if part.inline_data is not None:
        return {"inlineData": {"mimeType": part.inline_data.mime_type, "data": part.inline_data.data}}
    return {"fileData": {"mimeType": part.file_data.mime_type, "fileUri": part.file_data.file_uri}}


def build_contents(request: ChatRequest) -> tuple[List[Dict[str, Any]], Optional[str]]:
    """Returns (contents, system_instruction). System messages are folded into the instruction."""
    contents = []
    system_texts = []
    if request.options.system_instruction:
        system_texts.append(request.options.system_instruction)

    for message in request.messages:
        if message.role == "system":
            system_texts.append(message.content or "".join(p.text or "" for p in message.parts))
            continue
        role = "model" if message.role in ("assistant", "model") else "user"
        contents.append({"role": role, "parts": [_part_to_wire(p) for p in message.effective_parts()]})

    system_instruction = "\n\n".join(t for t in system_texts if t) or None
    return contents, system_instruction


def build_generate_body(request: ChatRequest) -> Dict[str, Any]:
    options = request.options
    contents, system_instruction = build_contents(request)

    generation_config: Dict[str, Any] = {}
    if options.temperature is not None:
        generation_config["temperature"] = float(options.temperature)
    if options.max_output_tokens is not None:
        generation_config["maxOutputTokens"] = int(options.max_output_tokens)
    if options.top_p is not None:
        generation_config["topP"] = float(options.top_p)
    if options.top_k is not None:
        generation_config["topK"] = int(options.top_k)
    if options.stop_sequences:
        generation_config["stopSequences"] = list(options.stop_sequences)
    if options.thinking is not None:
        thinking: Dict[str, Any] = {"includeThoughts": options.thinking.include_thoughts}
        if options.thinking.thinking_budget is not None:
            thinking["thinkingBudget"] = options.thinking.thinking_budget
        if options.thinking.thinking_level is not None:
            thinking["thinkingLevel"] = options.thinking.thinking_level
        generation_config["thinkingConfig"] = thinking

    body: Dict[str, Any] = {
        "contents": contents,
        "safetySettings": safety_settings(options.safety_preset),
    }
    if system_instruction:
        body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
    if generation_config:
        body["generationConfig"] = generation_config
    if options.tools:
        body["tools"] = options.tools
    return body


def parse_usage(data: Dict[str, Any]) -> Optional[Usage]:
    meta = data.get("usageMetadata")
    if not meta:
        return None
    return Usage(
        prompt_tokens=meta.get("promptTokenCount", 0) or 0,
        completion_tokens=meta.get("candidatesTokenCount", 0) or 0,
        total_tokens=meta.get("totalTokenCount", 0) or 0,
    )


def _check_prompt_block(data: Dict[str, Any], provider: str, model: Optional[str]) -> None:
    feedback = data.get("promptFeedback") or {}
    block_reason = feedback.get("blockReason")
    if block_reason:
        raise SafetyBlocked(f"Prompt blocked by safety filters ({block_reason})", provider=provider, model=model)


def _check_finish_block(raw_finish: Optional[str], provider: str, model: Optional[str]) -> None:
    if raw_finish in BLOCKING_FINISH_REASONS:
        raise SafetyBlocked(f"Response blocked by safety filters ({raw_finish})", provider=provider, model=model)


def map_finish_reason(raw: Optional[str]) -> Optional[FinishReason]:
    if raw is None:
        return None
    return FINISH_REASONS.get(raw, FinishReason.OTHER)


def parse_generate_response(data: Dict[str, Any], model: str, provider: str) -> ChatResponse:
    _check_prompt_block(data, provider, model)
    candidates = data.get("candidates") or []
    candidate = candidates[0] if candidates else {}
    raw_finish = candidate.get("finishReason")
    _check_finish_block(raw_finish, provider, model)

    texts, thoughts, function_calls = [], [], []
    for part in (candidate.get("content") or {}).get("parts", []):
        if "functionCall" in part:
            function_calls.append(part["functionCall"])
        elif part.get("thought") is True:
            thoughts.append(part.get("text", ""))
        elif "text" in part:
            texts.append(part["text"])

    finish_reason = map_finish_reason(raw_finish) or FinishReason.STOP
    if function_calls and finish_reason == FinishReason.STOP:
        finish_reason = FinishReason.TOOL_CALLS

    return ChatResponse(
        text="".join(texts),
        thoughts=thoughts or None,
        finish_reason=finish_reason,
        usage=parse_usage(data) or Usage(),
        grounding=candidate.get("groundingMetadata"),
        function_calls=function_calls or None,
        model=data.get("modelVersion") or model,
    )


def make_frame_parser(provider: str, model: Optional[str]):
    def parse_frame(frame: Dict[str, Any]) -> FrameDelta:
        _check_prompt_block(frame, provider, model)
        candidates = frame.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        raw_finish = candidate.get("finishReason")
        _check_finish_block(raw_finish, provider, model)

        text, thought = "", ""
        for part in (candidate.get("content") or {}).get("parts", []):
            if part.get("thought") is True:
                thought += part.get("text", "")
            else:
                text += part.get("text", "")

        if not candidates and "usageMetadata" not in frame:
            raise ValueError("frame has neither candidates nor usage")

        return FrameDelta(
            text=text or None,
            thought=thought or None,
            finish_reason=map_finish_reason(raw_finish),
            usage=parse_usage(frame),
        )

    return parse_frame
