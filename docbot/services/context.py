from typing import Dict, List, Optional, Sequence

from ..schemas import ConversationTurn, RetrievedChunk

DEFAULT_PERSONA = (
    "You are a helpful WhatsApp assistant. Your ONLY job is to answer questions "
    "based strictly on the provided document context."
)

GROUNDING_RULES = (
    "STRICT RULES:\n"
    "- ONLY answer questions using information from the CONTEXT below\n"
    "- If the answer is not in the CONTEXT, say \"I don't have that information in the document\"\n"
    "- NEVER use your general knowledge or make assumptions beyond the document\n"
    "- NEVER offer to do tasks you cannot do (generate files, make calls, etc.)\n"
    "- Be concise and friendly - keep responses under 300 words\n"
    "- Use clear, simple language appropriate for WhatsApp chat\n"
    "- Format responses with line breaks for readability"
)

NO_CONTEXT = "No relevant context found in the documents."


class ContextAssembler:
    def __init__(self, history_turns: int = 10, persona: str = DEFAULT_PERSONA, rules: str = GROUNDING_RULES):
        if history_turns < 0:
            raise ValueError("history_turns must be >= 0")
        self.history_turns = history_turns
        self.persona = persona
        self.rules = rules

    def context_block(self, chunks: Sequence[RetrievedChunk]) -> str:
        text = "\n\n".join(c.text for c in chunks)
        return text or NO_CONTEXT

    def system_instruction(self, chunks: Sequence[RetrievedChunk], system_prompt: Optional[str] = None) -> str:
        persona = (system_prompt or "").strip() or self.persona
        return f"{persona}\n\n{self.rules}\n\nCONTEXT:\n{self.context_block(chunks)}"

    def assemble(
        self,
        chunks: Sequence[RetrievedChunk],
        history: Sequence[ConversationTurn],
        system_prompt: Optional[str],
        latest_message: str,
    ) -> List[Dict[str, str]]:
        """System instruction, the last ``history_turns`` turns (oldest first), then the new message."""
        recent = list(history)[-self.history_turns:] if self.history_turns else []
        messages = [{"role": "system", "content": self.system_instruction(chunks, system_prompt)}]
        messages.extend({"role": t.role, "content": t.content} for t in recent)
        messages.append({"role": "user", "content": latest_message})
        return messages
