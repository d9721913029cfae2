"""
Chat Routes - Send messages, browse and manage chats.

Authentication is optional: anonymous callers work with anonymous chats
and are never metered.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from chatbot.api.dependencies import (
    get_conversation_store,
    get_model_gateway,
    get_optional_user_id,
    get_orchestrator,
)
from chatbot.models.api import (
    ApiResponse,
    ChatResponse,
    ChatSidebarItemResponse,
    DeletedResponse,
    MessageResponse,
    ModelInfo,
    SaveChatRequest,
    SavedChatResponse,
    SendMessageRequest,
    SendMessageResponse,
    UsageResponse,
)
from chatbot.models.domain import ChatData, MessageData
from chatbot.services.conversation_store import DEFAULT_TITLE, ConversationStore
from chatbot.services.model_gateway import ModelGateway
from chatbot.services.orchestrator import ChatOrchestrator

router = APIRouter(prefix="/chat", tags=["chat"])


def message_response(message: MessageData) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        role=message.role,
        content=message.content,
        model=message.model,
        timestamp=message.timestamp,
    )


def chat_response(chat: ChatData) -> ChatResponse:
    return ChatResponse(
        id=chat.id,
        title=chat.title,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        messages=[message_response(m) for m in chat.messages],
    )


@router.post("/send", response_model=ApiResponse[SendMessageResponse])
async def send_message(
    request: SendMessageRequest,
    owner_id: UUID | None = Depends(get_optional_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[SendMessageResponse]:
    """
    Send a message and get the assistant's reply.

    Creates a chat when chat_id is omitted. Signed-in callers spend one
    credit per delivered reply.
    """
    result = await orchestrator.send_message(
        request.chat_id, request.message, owner_id=owner_id, model_id=request.model
    )
    return ApiResponse(
        data=SendMessageResponse(
            chat=chat_response(result.chat),
            message=message_response(result.assistant_message),
            remaining_credits=result.remaining_credits,
        )
    )


# Static paths are declared before /{chat_id} so they are not captured by it


@router.get("/sidebar", response_model=ApiResponse[list[ChatSidebarItemResponse]])
async def list_sidebar_chats(
    owner_id: UUID | None = Depends(get_optional_user_id),
    store: ConversationStore = Depends(get_conversation_store),
) -> ApiResponse[list[ChatSidebarItemResponse]]:
    items = await store.list_for_owner(owner_id)
    return ApiResponse(
        data=[
            ChatSidebarItemResponse(id=item.id, title=item.title, updated_at=item.updated_at)
            for item in items
        ]
    )


@router.get("/usage", response_model=ApiResponse[UsageResponse])
async def get_usage(
    owner_id: UUID | None = Depends(get_optional_user_id),
    store: ConversationStore = Depends(get_conversation_store),
) -> ApiResponse[UsageResponse]:
    usage = await store.usage_for_owner(owner_id)
    return ApiResponse(
        data=UsageResponse(
            total_chats=usage.total_chats,
            total_messages=usage.total_messages,
            credits=usage.credits,
        )
    )


@router.get("/models", response_model=ApiResponse[list[ModelInfo]])
async def list_models(
    gateway: ModelGateway = Depends(get_model_gateway),
) -> ApiResponse[list[ModelInfo]]:
    return ApiResponse(data=await gateway.list_models())


@router.post("/save", response_model=ApiResponse[SavedChatResponse])
async def save_chat(
    request: SaveChatRequest,
    owner_id: UUID | None = Depends(get_optional_user_id),
    store: ConversationStore = Depends(get_conversation_store),
) -> ApiResponse[SavedChatResponse]:
    """Rename a chat, or create an empty one when no chat_id is given."""
    if request.chat_id is None:
        chat = await store.create_chat(owner_id, request.title or DEFAULT_TITLE)
        message = "Chat created"
    else:
        chat = await store.rename_chat(request.chat_id, request.title, owner_id)
        message = "Chat saved"
    return ApiResponse(data=SavedChatResponse(id=chat.id, title=chat.title), message=message)


@router.delete("/history", response_model=ApiResponse[DeletedResponse])
async def delete_all_chats(
    owner_id: UUID | None = Depends(get_optional_user_id),
    store: ConversationStore = Depends(get_conversation_store),
) -> ApiResponse[DeletedResponse]:
    count = await store.delete_all_for_owner(owner_id)
    return ApiResponse(data=DeletedResponse(count=count), message="Chat history cleared")


@router.get("/{chat_id}", response_model=ApiResponse[ChatResponse])
async def get_chat(
    chat_id: UUID,
    owner_id: UUID | None = Depends(get_optional_user_id),
    store: ConversationStore = Depends(get_conversation_store),
) -> ApiResponse[ChatResponse]:
    return ApiResponse(data=chat_response(await store.get_chat(chat_id, owner_id)))


@router.delete("/{chat_id}", response_model=ApiResponse[DeletedResponse])
async def delete_chat(
    chat_id: UUID,
    owner_id: UUID | None = Depends(get_optional_user_id),
    store: ConversationStore = Depends(get_conversation_store),
) -> ApiResponse[DeletedResponse]:
    await store.delete_chat(chat_id, owner_id)
    return ApiResponse(data=DeletedResponse(), message="Chat deleted")
