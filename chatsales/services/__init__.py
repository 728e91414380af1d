from chatsales.services.openai_service import CompletionProvider, OpenAICompletionProvider
from chatsales.services.email_service import EmailService
from chatsales.services.notification_service import NotificationDispatcher, NotificationKind
from chatsales.services.stores import ConversationStore, LeadStore, TicketStore, PersistenceError

__all__ = [
    'CompletionProvider',
    'OpenAICompletionProvider',
    'EmailService',
    'NotificationDispatcher',
    'NotificationKind',
    'ConversationStore',
    'LeadStore',
    'TicketStore',
    'PersistenceError',
]
