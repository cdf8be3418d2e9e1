"""
branchchat - branching LLM conversations with streaming and tool calling.

This library provides:

- A conversation tree where every user message can have alternative
  versions (edits, resends), each with its own continuation
- Streaming adapters for OpenAI, Anthropic, Google, Cohere and
  OpenAI-compatible gateways, all emitting one provider-neutral event stream
- A tool-calling orchestrator with a bounded tool loop
- Per-conversation sessions and an optional REST API

Quick Start:
    >>> from branchchat import ConversationManager, get_settings
    >>> manager = ConversationManager(get_settings())
    >>> session = manager.create()
    >>> result = await session.send_message("What time is it?")
"""

from branchchat.config import Settings, get_settings
from branchchat.conversation.session import ConversationManager, ConversationSession

__version__ = "0.1.0"
__all__ = ["ConversationManager", "ConversationSession", "Settings", "get_settings"]
