import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Request, WebSocket, WebSocketDisconnect

from app.core.dependencies import get_actor_id, websocket_actor_id

from .channel import EMPTY_MESSAGE_ERROR, ChannelEvent, ChannelState
from .exceptions import (
    ConversationNotFound,
    NotAParticipant,
    SelfConversationError,
    StoreError,
)
from .schemas import (
    ConversationSelection,
    GetConversationsResponseModel,
    GetMessagesResponseModel,
    Message,
    OpenConversationModel,
    OpenConversationResult,
    SendMessageModel,
    UnreadTotalResponseModel,
)
from .service import ChatService
from .unread import total_unread


logger = logging.getLogger(__name__)
router = APIRouter()


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat


async def ensure_participant(service: ChatService, conversation_id: str, actor_id: str):
    try:
        return await service.directory.get_participating(conversation_id, actor_id)
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except NotAParticipant:
        raise HTTPException(
            status_code=403, detail="You are not a member of this conversation"
        )


@router.post(
    "/conversations",
    response_model=OpenConversationResult,
    status_code=200,
)
async def open_or_create_conversation(
    data: OpenConversationModel,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Get or create the conversation with another user, optionally about a listing.

    Used when a buyer clicks "Message seller" on a listing page. There is at
    most one conversation per pair of users per listing.

    **Input**
    - `counterpart_id`: id of the other user
    - `listing_id`: optional listing the conversation is about

    **Returns**
    - `conversation_id`: id of the conversation
    - `is_new`: whether it was created by this call

    **Errors**
    - 400: Attempt to message yourself
    - 401: Unauthorized
    - 500: Database error
    """
    try:
        return await service.directory.open_or_create_conversation(
            actor_id, data.counterpart_id, data.listing_id
        )

    except SelfConversationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    except StoreError:
        raise HTTPException(
            status_code=500,
            detail="Failed to create or fetch conversation.",
        )


@router.get(
    "/conversations",
    response_model=GetConversationsResponseModel,
    status_code=200,
)
async def get_conversations(
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Retrieve the inbox of the authenticated user.

    Conversations are ordered by last activity. Each entry carries the other
    participant's profile (or an "Unknown user" placeholder), the listing it
    is about, the latest message and the number of unread messages.

    **Returns**
    - `conversations`: list of conversation summaries
    - `unread_total`: sum of the unread counts

    **Errors**
    - 401: Invalid or expired JWT
    - 500: Database or unexpected server error
    """
    try:
        summaries = await service.directory.list_conversations(actor_id)
        return {
            "conversations": summaries,
            "unread_total": total_unread(summaries),
        }

    except StoreError:
        raise HTTPException(status_code=500, detail="Failed to fetch conversations")


@router.get(
    "/conversations/select",
    response_model=ConversationSelection,
    status_code=200,
)
async def select_conversation(
    conversation_id: Optional[str] = None,
    listing_id: Optional[str] = None,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Resolve an inbox deep link such as `/inbox?conversationId=...&listingId=...`.

    **Query Parameters**
    - `conversation_id`: conversation to open (optional)
    - `listing_id`: listing to pre-attach to the next message (optional)

    **Errors**
    - 403: Not a member of the conversation
    - 404: Conversation does not exist
    - 500: Database error
    """
    try:
        return await service.directory.select_conversation(
            actor_id, conversation_id, listing_id
        )

    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found")

    except NotAParticipant:
        raise HTTPException(
            status_code=403, detail="You are not a member of this conversation"
        )

    except StoreError:
        raise HTTPException(status_code=500, detail="Failed to open conversation")


@router.get(
    "/messages/{conversation_id}",
    response_model=GetMessagesResponseModel,
    status_code=200,
)
async def get_messages(
    conversation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Retrieve all messages of a conversation, oldest first.

    Messages the user received are marked read as part of the call.

    **Path Parameters**
    - `conversation_id`: id of the conversation

    **Errors**
    - 401: Invalid or expired authentication token
    - 403: User is not a member of the conversation
    - 404: Conversation does not exist
    - 500: Database or unexpected server error
    """
    try:
        await ensure_participant(service, conversation_id, actor_id)
        channel = service.channel(conversation_id, actor_id, live=False)
        try:
            messages = await channel.load_history()
        finally:
            await channel.close()
        return {"messages": messages}

    except HTTPException:
        raise

    except StoreError:
        raise HTTPException(status_code=500, detail="Failed to retrieve messages")


@router.post(
    "/messages",
    response_model=Message,
    status_code=201,
)
async def send_message(
    data: SendMessageModel,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Send a message to a conversation the user belongs to.

    **Input**
    - `conversation_id`: id of the conversation
    - `content`: message text, trimmed, must not be blank
    - `listing_id`: optional listing attached to the message

    **Returns**
    - The stored message

    **Errors**
    - 400: Blank message
    - 403: Not a member of the conversation
    - 404: Conversation not found
    - 502: The message could not be stored; it is safe to resend
    """
    try:
        await ensure_participant(service, data.conversation_id, actor_id)
        channel = service.channel(data.conversation_id, actor_id, live=False)
        try:
            result = await channel.send_message(data.content, data.listing_id)
        finally:
            await channel.close()

        if result.ok:
            return result.message
        if result.error == EMPTY_MESSAGE_ERROR:
            raise HTTPException(status_code=400, detail=result.error)
        raise HTTPException(status_code=502, detail="Failed to send message.")

    except HTTPException:
        raise

    except StoreError:
        raise HTTPException(status_code=500, detail="Failed to send message.")


@router.get(
    "/unread",
    response_model=UnreadTotalResponseModel,
    status_code=200,
)
async def get_unread_total(
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(get_chat_service),
):
    """Total unread messages across all conversations (inbox badge)."""
    try:
        return {"unread_total": await service.unread.get_unread_total(actor_id)}

    except StoreError:
        raise HTTPException(status_code=500, detail="Failed to count unread messages")


def _parse_frame(raw: str) -> Optional[dict]:
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    return frame if isinstance(frame, dict) else None


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        frame = await outbox.get()
        await websocket.send_json(frame)


def _inbox_frame(summaries) -> dict:
    return {
        "type": "inbox",
        "conversations": [s.model_dump(mode="json") for s in summaries],
        "unread_total": total_unread(summaries),
    }


@router.websocket("/ws/inbox")
async def inbox_socket(websocket: WebSocket):
    """
    Live inbox over a WebSocket: `?token=<access token>`.

    Sends an `inbox` frame (summaries and unread total) on connect and
    again whenever a message change refreshes the listing. Client frames:
    `{"type": "refresh"}` to ask for a new listing.
    """
    actor_id = await websocket_actor_id(websocket)
    if actor_id is None:
        return

    service: ChatService = websocket.app.state.chat
    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()

    def forward(refreshed_actor: str, summaries) -> None:
        if refreshed_actor == actor_id:
            outbox.put_nowait(_inbox_frame(summaries))

    service.directory.add_refresh_listener(forward)
    writer_task = asyncio.create_task(_pump(websocket, outbox))

    async def refresh() -> None:
        try:
            await service.directory.refresh(actor_id)
        except StoreError:
            outbox.put_nowait({"type": "error", "detail": "Failed to fetch conversations"})

    try:
        async with await service.directory.watch(actor_id):
            await refresh()

            while True:
                frame = _parse_frame(await websocket.receive_text())
                if frame is None or frame.get("type") != "refresh":
                    outbox.put_nowait({"type": "error", "detail": "Unsupported frame"})
                    continue
                await refresh()

    except WebSocketDisconnect:
        logger.info(f"inbox socket closed for {actor_id}")

    finally:
        service.directory.remove_refresh_listener(forward)
        writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)


@router.websocket("/ws/{conversation_id}")
async def conversation_socket(websocket: WebSocket, conversation_id: str):
    """
    Live conversation over a WebSocket: `?token=<access token>`.

    Server frames: `history`, `provisional`, `confirmed`, `rolled_back`,
    `received`, `ack`, `error`. Client frames: `{"content", "listing_id"}`
    to send, `{"type": "retry"}` to reload a failed history.
    """
    actor_id = await websocket_actor_id(websocket)
    if actor_id is None:
        return

    service: ChatService = websocket.app.state.chat
    try:
        await service.directory.get_participating(conversation_id, actor_id)
    except ConversationNotFound:
        await websocket.close(code=4404)
        return
    except NotAParticipant:
        await websocket.close(code=4403)
        return

    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()

    def forward(event: ChannelEvent, message: Message) -> None:
        outbox.put_nowait({"type": event.value, "message": message.model_dump(mode="json")})

    channel = service.channel(conversation_id, actor_id)
    channel.add_listener(forward)
    writer_task = asyncio.create_task(_pump(websocket, outbox))

    try:
        async with channel:
            await _send_history(channel, outbox)

            while True:
                frame = _parse_frame(await websocket.receive_text())
                if frame is None:
                    outbox.put_nowait({"type": "error", "detail": "Frames must be JSON objects"})
                    continue

                if frame.get("type") == "retry":
                    try:
                        await channel.retry()
                    except StoreError:
                        pass
                    await _send_history(channel, outbox)
                    continue

                content = frame.get("content")
                listing_id = frame.get("listing_id")
                result = await channel.send_message(
                    content if isinstance(content, str) else "",
                    listing_id if isinstance(listing_id, str) else None,
                )
                outbox.put_nowait(
                    {
                        "type": "ack",
                        "client_id": frame.get("client_id"),
                        **result.model_dump(mode="json"),
                    }
                )

    except WebSocketDisconnect:
        logger.info(f"[{conversation_id}] socket closed for {actor_id}")

    finally:
        writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)


async def _send_history(channel, outbox: asyncio.Queue) -> None:
    if channel.state == ChannelState.ERROR:
        outbox.put_nowait({"type": "error", "detail": "Failed to load messages"})
        return
    outbox.put_nowait(
        {
            "type": "history",
            "messages": [m.model_dump(mode="json") for m in channel.messages],
        }
    )
