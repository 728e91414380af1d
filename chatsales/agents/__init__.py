from chatsales.agents.extraction_engine import ExtractionEngine
from chatsales.agents.field_validator import FieldValidator
from chatsales.agents.question_selector import QuestionSelector
from chatsales.agents.support_detector import SupportEscalationDetector
from chatsales.agents.prompt_composer import PromptComposer
from chatsales.agents.streaming_driver import StreamingResponseDriver
from chatsales.agents.orchestrator import ConversationOrchestrator

__all__ = [
    'ExtractionEngine',
    'FieldValidator',
    'QuestionSelector',
    'SupportEscalationDetector',
    'PromptComposer',
    'StreamingResponseDriver',
    'ConversationOrchestrator',
]
