"""
FastAPI server for the end-to-end encrypted chat.

This server:
- Stores each user's current key-agreement public key (the key directory)
- Stores per-member wrapped copies of group keys
- Relays messages via WebSocket (does NOT store or decrypt them)
- Rejects encrypted messages for recipients that reported no private key
"""

import base64
import binascii
from typing import Dict, Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Depends
from pydantic import BaseModel
from contextlib import asynccontextmanager

from e2ee.config import Settings
from .auth import current_user, verify_token
from .database import Database

PUBLIC_KEY_SIZE = 32


# Pydantic models for API
class PublicKeyUpload(BaseModel):
    publicKey: str


class GroupKeyUpload(BaseModel):
    version: int = 1
    wrapped: Dict[str, str]


def _key_record(row) -> dict:
    return {"userId": row.user_id, "publicKey": row.public_key, "version": row.version}


def _valid_public_key(value: str) -> bool:
    try:
        return len(base64.b64decode(value, validate=True)) == PUBLIC_KEY_SIZE
    except (binascii.Error, ValueError):
        return False


# WebSocket connection manager
class ConnectionManager:
    """Manages active WebSocket connections and reported capabilities"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.capabilities: Dict[str, dict] = {}

    def disconnect(self, username: str):
        """Remove a WebSocket connection"""
        self.active_connections.pop(username, None)
        self.capabilities.pop(username, None)

    async def send_message(self, username: str, message: dict):
        """Send a message to a specific user"""
        if username in self.active_connections:
            await self.active_connections[username].send_json(message)

    def is_online(self, username: str) -> bool:
        """Check if a user is online"""
        return username in self.active_connections

    def get_online_users(self) -> list[str]:
        """Get list of online users"""
        return list(self.active_connections.keys())

    def can_decrypt(self, username: str) -> bool:
        """False only when the user reported lacking a private key"""
        report = self.capabilities.get(username)
        if report is None:
            return True
        return bool(report.get("hasPrivateKey")) and bool(report.get("hasCryptoPrimitive"))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the directory/relay application.

    Args:
        settings: Runtime settings; read from the environment when omitted
    """
    settings = settings or Settings.from_env()
    db = Database(settings.database_url)
    manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        print("Database initialized")
        yield
        await db.dispose()
        print("Server shutting down")

    app = FastAPI(
        title="Encrypted Chat Key Directory",
        description="Public key directory and relay for end-to-end encrypted chat",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.db = db
    app.state.manager = manager

    @app.put("/keys/{user_id}")
    async def publish_key(user_id: str, upload: PublicKeyUpload, username: str = Depends(current_user)):
        """
        Publish the caller's public key.

        Publishing a different key increments the version, which tells peers
        their cached session keys are stale.
        """
        if username != user_id:
            raise HTTPException(status_code=403, detail="Not authorized")
        if not _valid_public_key(upload.publicKey):
            raise HTTPException(status_code=400, detail="Invalid public key")

        row = await db.put_public_key(user_id, upload.publicKey)
        return _key_record(row)

    @app.get("/keys/{user_id}")
    async def get_key(user_id: str):
        """
        Get a user's current public key.

        This is public - anyone can look up a key to start a conversation.
        """
        row = await db.get_public_key(user_id)
        if not row:
            raise HTTPException(status_code=404, detail="User not found or no key published")
        return _key_record(row)

    @app.put("/groups/{group_id}/key")
    async def publish_group_key(group_id: str, upload: GroupKeyUpload, username: str = Depends(current_user)):
        """
        Replace the wrapped copies of a group key.

        The uploader must be a current member of an existing group and must
        keep a copy for themselves.
        """
        members = await db.group_members(group_id)
        if members and username not in members:
            raise HTTPException(status_code=403, detail="Only current members can rotate the group key")
        if username not in upload.wrapped:
            raise HTTPException(status_code=403, detail="Uploader must be a group member")

        await db.put_group_keys(group_id, upload.version, upload.wrapped)
        return {"status": "success", "groupId": group_id, "version": upload.version,
                "members": sorted(upload.wrapped)}

    @app.get("/groups/{group_id}/key")
    async def get_group_key(group_id: str, username: str = Depends(current_user)):
        """Return the caller's own wrapped copy of the group key"""
        row = await db.get_group_key(group_id, username)
        if not row:
            raise HTTPException(status_code=404, detail="No group key for this member")
        return {"groupId": group_id, "wrappedKey": row.wrapped_key, "version": row.version}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for real-time messaging.

        Protocol:
        1. Client sends: {"type": "auth", "token": "jwt_token"}
        2. Server responds: {"type": "auth_success", "username": "..."}
        3. Client reports: {"type": "capabilities", "hasPrivateKey": ..., "hasCryptoPrimitive": ...}
        4. Client sends: {"type": "message", "recipientId"|"groupId": ..., "ciphertext": ..., "meta": {...}}
        5. Server relays the payload with "senderId" set to the authenticated user
        """
        username = None

        try:
            await websocket.accept()

            auth_data = await websocket.receive_json()

            if auth_data.get("type") != "auth":
                await websocket.send_json({"type": "error", "message": "Authentication required"})
                await websocket.close()
                return

            username = verify_token(auth_data.get("token") or "", settings.secret_key)

            if not username:
                await websocket.send_json({"type": "error", "message": "Invalid token"})
                await websocket.close()
                return

            manager.active_connections[username] = websocket
            await websocket.send_json({
                "type": "auth_success",
                "username": username,
                "online_users": manager.get_online_users()
            })

            for other_user in list(manager.active_connections):
                if other_user != username:
                    await manager.send_message(other_user, {
                        "type": "user_online",
                        "username": username
                    })

            while True:
                data = await websocket.receive_json()
                message_type = data.get("type")

                if message_type == "capabilities":
                    manager.capabilities[username] = {
                        "hasPrivateKey": bool(data.get("hasPrivateKey")),
                        "hasCryptoPrimitive": bool(data.get("hasCryptoPrimitive")),
                    }

                elif message_type == "message":
                    await _relay(websocket, username, data)

                elif message_type == "ping":
                    await websocket.send_json({"type": "pong"})

        except WebSocketDisconnect:
            pass
        finally:
            if username:
                manager.disconnect(username)
                for other_user in list(manager.active_connections):
                    await manager.send_message(other_user, {
                        "type": "user_offline",
                        "username": username
                    })

    async def _relay(websocket: WebSocket, username: str, data: dict):
        recipient = data.get("recipientId")
        group_id = data.get("groupId")
        if (not recipient and not group_id) or "ciphertext" not in data:
            await websocket.send_json({"type": "error", "message": "Invalid message format"})
            return

        payload = {
            "type": "message",
            "senderId": username,
            "ciphertext": data["ciphertext"],
            "meta": data.get("meta") or {},
        }
        encrypted = not payload["meta"].get("unencrypted")

        if group_id:
            members = await db.group_members(group_id)
            if username not in members:
                await websocket.send_json({"type": "error", "message": f"Not a member of {group_id}"})
                return
            payload["groupId"] = group_id
            for member in members:
                if member != username:
                    await manager.send_message(member, payload)
            await websocket.send_json({"type": "delivered", "groupId": group_id})
            return

        if not manager.is_online(recipient):
            await websocket.send_json({"type": "error", "message": f"User {recipient} is offline"})
            return

        if encrypted and not manager.can_decrypt(recipient):
            await websocket.send_json({
                "type": "error_sending",
                "reason": "recipient_no_private_key",
                "recipientId": recipient
            })
            return

        payload["recipientId"] = recipient
        await manager.send_message(recipient, payload)
        await websocket.send_json({"type": "delivered", "to": recipient})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
