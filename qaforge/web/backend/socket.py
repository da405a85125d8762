import asyncio
import json
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from qaforge.message_store import EventSubscription
from qaforge.orchestrator import AnalysisOrchestrator, AnalysisRequest, DEFAULT_CANCEL_REASON
from qaforge.output import print_debug, print_info, print_warning

router = APIRouter()


class ClientConnection:
    """One WebSocket client; sends are serialized between the pumps."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.client_id = str(uuid.uuid4())
        self._send_lock = asyncio.Lock()

    async def send(self, payload: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_json(payload)

    async def send_error(self, message: str) -> None:
        await self.send({"type": "error", "message": message})


async def handle_client_message(text: str, client: ClientConnection, orchestrator: AnalysisOrchestrator) -> None:
    """Dispatch one text frame from a client."""
    try:
        message = json.loads(text)
    except ValueError:
        await client.send_error("Invalid JSON message")
        return
    if not isinstance(message, dict):
        await client.send_error("Message must be a JSON object")
        return

    message_type = message.get("type", "unknown")

    if message_type == "start-code-analysis":
        request = AnalysisRequest.from_dict(message)
        if not request.subject_id:
            await client.send_error("ticketId is required")
            return
        print_info(f"Starting analysis for ticket {request.subject_id} from client {client.client_id}")
        accepted = await orchestrator.start_analysis(request)
        await client.send({"type": "analysis-started", **accepted.to_dict()})

    elif message_type == "stop-analysis":
        ticket_id = message.get("ticketId") or message.get("ticket_id")
        if not ticket_id:
            await client.send_error("ticketId is required")
            return
        result = await orchestrator.stop_analysis(ticket_id, message.get("reason") or DEFAULT_CANCEL_REASON)
        await client.send({"type": "analysis-stopped", "ticket_id": ticket_id, **result.to_dict()})

    elif message_type == "ping":
        await client.send({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})

    else:
        print_debug(f"Unknown message type from client {client.client_id}: {message_type}")


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    client = ClientConnection(websocket)
    orchestrator: AnalysisOrchestrator = websocket.app.state.orchestrator
    subscription: EventSubscription = websocket.app.state.message_store.subscribe()
    print_info(f"[WS] Client connected: {client.client_id}")

    # Task to pump events from the message store -> WebSocket
    async def sender_task():
        try:
            async for event in subscription:
                await client.send({"type": "log", "ticket_id": event.subject_id, "data": event.to_dict()})
        except WebSocketDisconnect:
            pass
        except Exception as e:
            print_warning(f"[WS] Sender task error: {e}")

    # Task to pump messages from WebSocket -> orchestrator
    async def receiver_task():
        try:
            while True:
                text = await websocket.receive_text()
                await handle_client_message(text, client, orchestrator)
        except WebSocketDisconnect:
            print_debug(f"[WS] Client {client.client_id} disconnected")
        except Exception as e:
            print_warning(f"[WS] Receiver task error: {e}")

    sender = asyncio.create_task(sender_task())
    receiver = asyncio.create_task(receiver_task())
    try:
        done, pending = await asyncio.wait([sender, receiver], return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    finally:
        subscription.close()
        print_info(f"[WS] Connection closed: {client.client_id}")
