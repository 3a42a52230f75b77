"""Pricing and policy knowledge base (``cleaning.yml`` plus ``docs/*.md``)."""

from concierge.kb.loader import KnowledgeBase, get_knowledge_base, reload_knowledge_base

__all__ = ["KnowledgeBase", "get_knowledge_base", "reload_knowledge_base"]
