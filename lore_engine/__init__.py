"""
Lore Engine - Knowledge Activation for Conversational Bots

Decides, on every chat turn, which lore entries attached to a bot are
injected into the language-model prompt, and where. Includes the
chunking/embedding pipeline that makes entries searchable and the
SillyTavern world book / character card interchange layer.
"""

__version__ = "0.1.0"
