# chatsales/models/__init__.py
from chatsales.models.conversation import Conversation, ConversationTurn, ConversationRecord, TurnRecord, TurnRole
from chatsales.models.lead import Lead, LeadRecord, LeadStatus
from chatsales.models.support_ticket import SupportTicket, TicketRecord, TicketStatus, TicketPriority, Sentiment

__all__ = [
    'Conversation',
    'ConversationTurn',
    'ConversationRecord',
    'TurnRecord',
    'TurnRole',
    'Lead',
    'LeadRecord',
    'LeadStatus',
    'SupportTicket',
    'TicketRecord',
    'TicketStatus',
    'TicketPriority',
    'Sentiment',
]
