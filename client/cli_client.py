#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- Publishing our key-agreement key to the directory
- Encrypted direct and group messaging
- Transparent fallback to flagged plaintext when encryption is not possible
"""

import asyncio
import json
import sys
import getpass
import logging
from typing import Optional
from datetime import datetime
import websockets
import httpx
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2ee.config import Settings
from e2ee.directory import DirectoryClient
from e2ee.models import EncryptedMessage, OutgoingMessage
from e2ee.session import CryptoSession
from client.storage import EncryptedStorage

HELP_TEXT = """Commands:
  /chat <username> - Start chat with user
  /group <group_id> - Switch to a group chat
  /members <group_id> <user,user,...> - Set group members and rotate its key
  /leave <group_id> - Leave a group
  /rotate - Regenerate and publish your key
  /exit - Exit current chat
  /quit - Quit application"""


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize chat client.

        Args:
            settings: Runtime settings; read from the environment when omitted
        """
        self.settings = settings or Settings.from_env()
        self.server_url = self.settings.server_url
        self.ws_url = self.server_url.replace("http", "ws", 1) + "/ws"
        self.username: Optional[str] = None
        self.token: Optional[str] = None
        self.storage: Optional[EncryptedStorage] = None
        self.crypto: Optional[CryptoSession] = None
        self.websocket = None
        self.http_client = httpx.AsyncClient()
        self.running = False
        self.current_chat: Optional[str] = None
        self.current_group: Optional[str] = None

    async def login(self, username: str, token: str, password: str) -> bool:
        """
        Unlock local storage and bootstrap the crypto session.

        Args:
            username: Our user id
            token: Bearer token issued by the auth service
            password: Password protecting the local key store

        Returns:
            True if successful
        """
        self.username = username
        self.token = token

        self.storage = EncryptedStorage(username, self.settings.storage_dir)
        if not self.storage.unlock(password):
            print("Failed to unlock storage with this password")
            return False

        directory = DirectoryClient(self.server_url, token, self.http_client)
        self.crypto = CryptoSession(username, directory, self.storage, self.settings)
        report = await self.crypto.bootstrap()

        if not report.has_crypto_primitive:
            print("Warning: encryption is not available here, messages will be sent unencrypted")
        print(f"Welcome, {username}")
        return True

    async def connect_websocket(self) -> bool:
        """Connect to WebSocket server and report our capabilities"""
        try:
            self.websocket = await websockets.connect(self.ws_url)

            await self.websocket.send(json.dumps({
                "type": "auth",
                "token": self.token
            }))

            response = await self.websocket.recv()
            data = json.loads(response)

            if data.get("type") != "auth_success":
                print("Authentication failed")
                return False

            print("Connected to server")
            print(f"Online users: {', '.join(data.get('online_users', []))}")

            await self.websocket.send(json.dumps({
                "type": "capabilities",
                **self.crypto.report.to_dict()
            }))
            return True

        except (OSError, websockets.exceptions.WebSocketException) as e:
            print(f"WebSocket connection error: {e}")
            return False

    async def _send(self, message: EncryptedMessage):
        await self.websocket.send(json.dumps({"type": "message", **message.to_wire()}))

    async def send_message(self, peer: str, text: str):
        """
        Send a direct message, encrypted when possible.

        Args:
            peer: Recipient username
            text: Message to send
        """
        message = await self.crypto.encrypt_outgoing(OutgoingMessage(text=text, recipient_id=peer))
        if message is None:
            print("Encryption failed. Message not sent.")
            return
        if message.meta.unencrypted:
            print("(sent without encryption)")
        await self._send(message)

    async def send_group_message(self, group_id: str, text: str):
        message = await self.crypto.encrypt_outgoing(OutgoingMessage(text=text, group_id=group_id))
        if message is None:
            print("Encryption failed. Message not sent.")
            return
        await self._send(message)

    async def receive_messages(self):
        """Background task to receive messages"""
        try:
            while self.running:
                raw = await self.websocket.recv()
                await self.handle_event(json.loads(raw))

        except websockets.exceptions.ConnectionClosed:
            print("\nConnection closed")
            self.running = False

    async def handle_event(self, data: dict):
        """Dispatch one transport event"""
        event_type = data.get("type")

        if event_type == "message":
            await self._handle_incoming_message(data)
        elif event_type == "error_sending":
            await self._handle_send_error(data)
        elif event_type == "user_online":
            print(f"\n[{data['username']} is now online]")
        elif event_type == "user_offline":
            print(f"\n[{data['username']} is now offline]")
        elif event_type == "error":
            print(f"\n[Error: {data.get('message')}]")

    async def _handle_incoming_message(self, data: dict) -> str:
        """Decrypt and display an incoming message; returns the displayed text"""
        message = EncryptedMessage.from_wire(data)
        result = await self.crypto.decrypt_incoming(message)

        timestamp = datetime.now().strftime("%H:%M")
        sender = message.sender_id
        if message.group_id:
            print(f"\n[{timestamp}] {sender}@{message.group_id}: {result.plaintext}")
        elif sender == self.current_chat:
            print(f"\n[{timestamp}] {sender}: {result.plaintext}")
        else:
            print(f"\n[New message from {sender}]: {result.plaintext}")
        return result.plaintext

    async def _handle_send_error(self, data: dict):
        recipient = data.get("recipientId")
        resend = self.crypto.handle_send_rejection(data.get("reason", ""), recipient)
        if resend is not None:
            await self._send(resend)
        else:
            print(f"\n[Message failed: {data.get('message') or data.get('reason')}]")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True

        receive_task = asyncio.create_task(self.receive_messages())
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    target = self.current_group or self.current_chat
                    prompt_text = f"[{target}] > " if target else "> "

                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.current_group:
                        await self.send_group_message(self.current_group, user_input)
                    elif self.current_chat:
                        await self.send_message(self.current_chat, user_input)
                    else:
                        print("No active chat. Use /chat <username> to start.")

                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            receive_task.cancel()
            if self.websocket:
                await self.websocket.close()
            await self.http_client.aclose()
            if self.storage:
                self.storage.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split()
        cmd = parts[0].lower()

        if cmd == "/chat" and len(parts) == 2:
            self.current_chat, self.current_group = parts[1], None
            print(f"Chatting with {parts[1]}. Type '/exit' to leave chat.")
        elif cmd == "/group" and len(parts) == 2:
            self.current_group, self.current_chat = parts[1], None
            self.crypto.join_group(parts[1])
            print(f"Chatting in group {parts[1]}.")
        elif cmd == "/members" and len(parts) == 3:
            record = await self.crypto.rotate_group(parts[1], parts[2].split(","))
            if record:
                print(f"Group {parts[1]} key rotated (version {record.version}, "
                      f"{len(record.wrapped_per_member)} members)")
            else:
                print("Cannot create a group key without encryption keys")
        elif cmd == "/leave" and len(parts) == 2:
            self.crypto.leave_group(parts[1])
            if self.current_group == parts[1]:
                self.current_group = None
            print(f"Left group {parts[1]}")
        elif cmd == "/rotate":
            if await self.crypto.rotate_keys():
                print("Key rotated and published")
            else:
                print("Key rotation failed")
        elif cmd == "/exit":
            self.current_chat = self.current_group = None
            print("Exited chat")
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    client = ChatClient()

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    username = input("Username: ").strip()
    token = getpass.getpass("Access token: ").strip()
    password = getpass.getpass("Local key store password: ")
    if not await client.login(username, token, password):
        return

    if await client.connect_websocket():
        await client.run_interactive()

    print("\nGoodbye!")


def run():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
