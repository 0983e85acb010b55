from app.models.project import Project
from app.models.indexed_file import IndexedFile, IndexedChunk
from app.models.conversation import Conversation, ConversationMessage
from app.models.intent_analysis import IntentAnalysis
from app.models.execution_plan import ExecutionPlan, FileExecution
from app.models.kv_cache import KVCache

__all__ = [
    "Project", "IndexedFile", "IndexedChunk", "Conversation", "ConversationMessage",
    "IntentAnalysis", "ExecutionPlan", "FileExecution", "KVCache",
]
