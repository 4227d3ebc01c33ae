from leadengine.ai.responder import generate, is_ai_enabled, should_escalate

__all__ = ["generate", "is_ai_enabled", "should_escalate"]
