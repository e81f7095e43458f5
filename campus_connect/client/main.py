"""Console client for Campus Connect messaging."""
import sys
from pathlib import Path
from typing import List, Optional

from ..shared.schemas import Conversation
from .errors import PlatformError
from .gui.app import ChatController
from .logging_config import configure_logging
from .receipts import visible_status
from .storage import get_token


class ConsoleClient:
    """Interactive console client. Platform calls run inline; timers run on each prompt."""

    def __init__(self, controller: ChatController):
        self.controller = controller

    def login(self) -> bool:
        print("=== Sign in ===")
        email = input("Email: ").strip()
        password = input("Password: ").strip()
        try:
            user = self.controller.sign_in(email, password)
        except PlatformError as exc:
            print(f"Sign in failed: {exc}")
            return False
        print(f"Welcome, {user.get('email', user['id'])}!")
        self.subscribe_notices()
        return True

    def subscribe_notices(self) -> None:
        def show(notice) -> None:
            if notice is not None:
                suffix = f" - {notice.description}" if notice.description else ""
                print(f"[{notice.level}] {notice.title}{suffix}")

        self.controller.store.notices.subscribe(show)

    def list_conversations(self) -> List[Conversation]:
        store = self.controller.store
        conversations = list(store.conversations.value)
        me = self.controller.me
        for i, conv in enumerate(conversations):
            peer = store.display_name(conv.peer_of(me))
            flags = "".join(
                [
                    "*" if conv.is_pinned_for(me) else " ",
                    "m" if conv.is_muted_for(me) else " ",
                ]
            )
            unread = f" ({conv.unread_count})" if conv.unread_count else ""
            print(f"{i:>2} {flags} {peer}{unread}")
        if not conversations:
            print("No conversations yet.")
        return conversations

    def _pick(self, conversations: List[Conversation]) -> Optional[Conversation]:
        raw = input("Conversation number: ").strip()
        if not raw.isdigit() or int(raw) >= len(conversations):
            print("Unknown conversation.")
            return None
        return conversations[int(raw)]

    def manage_conversations(self) -> None:
        conversations = self.list_conversations()
        if not conversations:
            return
        print("Commands: [o]pen, [p]in, [m]ute, [u]nread, [r]eorder, [b]ack")
        cmd = input("> ").strip().lower()
        if cmd == "b":
            return
        conv = self._pick(conversations)
        if conv is None:
            return
        messaging = self.controller.messaging
        if cmd == "o":
            self.chat(conv.peer_of(self.controller.me))
        elif cmd == "p":
            messaging.toggle_pin(conv.id)
        elif cmd == "m":
            messaging.toggle_mute(conv.id)
        elif cmd == "u":
            messaging.mark_unread(conv.id)
        elif cmd == "r":
            target = input("Move to position: ").strip()
            if target.isdigit():
                messaging.reorder(conv.id, int(target))

    def chat(self, peer_id: str) -> None:
        messaging = self.controller.messaging
        messaging.open_conversation(peer_id)
        print(f"Chat with {self.controller.store.display_name(peer_id)}")
        self.show_messages()
        while True:
            print("\nChat commands: [s]end, [i]mage, [r]efresh, [e]moji, [d]elete, [x] unsend, [t]ry again, [b]ack")
            cmd = input("> ").strip().lower()
            self.controller.tick()
            if cmd == "b":
                messaging.close_conversation()
                break
            if cmd == "s":
                messaging.send_message(text=input("Message: "))
            elif cmd == "i":
                path = Path(input("Image path: ").strip())
                if path.is_file():
                    messaging.send_message(image=(path.name, path.read_bytes()))
                else:
                    print("No such file.")
            elif cmd == "r":
                messaging.poll()
            elif cmd == "e":
                messaging.react(input("Message id: ").strip(), input("Emoji: ").strip())
            elif cmd == "d":
                messaging.delete_for_me(input("Message id: ").strip())
            elif cmd == "x":
                messaging.unsend(input("Message id: ").strip())
            elif cmd == "t":
                for failed in self.controller.store.failed_sends.value:
                    messaging.retry_failed(failed.temp_id)
            self.controller.tick()
            self.show_messages()

    def show_messages(self) -> None:
        store = self.controller.store
        view = store.thread.value
        me = self.controller.me
        for msg in view.messages:
            who = "you" if msg.sender_id == me else store.display_name(msg.sender_id)
            body = msg.content or f"<image {msg.image_url}>"
            status = visible_status(msg, me, store.settings.value)
            marker = f" [{status.value}]" if status else ""
            reactions = " ".join(f"{r.emoji}{r.count}" for r in view.reactions.get(msg.id, ()))
            print(f"[{msg.created_at:%H:%M}] {who}: {body}{marker} {reactions} ({msg.id})".rstrip())
        if view.peer_typing:
            print("... typing")
        for failed in store.failed_sends.value:
            print(f"! not delivered: {failed.content or failed.image_url}")

    def friends(self) -> None:
        friends = self.controller.friends
        friends.load(force=True)
        store = self.controller.store
        view = store.friends.value
        me = self.controller.me
        for f in view.friends:
            print(f"- {store.display_name(f.friend_of(me))}")
        for r in view.incoming:
            print(f"? request from {store.display_name(r.sender_id)} ({r.id})")
        print("Commands: [a]ccept, [d]ecline, [s]earch, [b]ack")
        cmd = input("> ").strip().lower()
        if cmd in ("a", "d"):
            friends.respond(input("Request id: ").strip(), accept=cmd == "a")
        elif cmd == "s":
            try:
                matches = self.controller.search_profiles(input("Name: ").strip())
            except PlatformError as exc:
                print(f"Search failed: {exc}")
                return
            for i, profile in enumerate(matches):
                print(f"{i:>2} {profile.display_name} {friends.status(profile.user_id).value}")
            raw = input("Add number (blank to skip): ").strip()
            if raw.isdigit() and int(raw) < len(matches):
                friends.send_request(matches[int(raw)].user_id)

    def settings(self) -> None:
        current = self.controller.store.settings.value
        for key, value in current.model_dump().items():
            print(f"{key}: {value}")
        key = input("Toggle setting (blank to skip): ").strip()
        if key in current.model_dump():
            self.controller.messaging.set_setting(key, not getattr(current, key))

    def logout(self) -> None:
        self.controller.sign_out()
        print("Logged out.")


def main():
    configure_logging()
    print("Campus Connect")
    controller = ChatController()
    if not controller.base_url:
        controller.set_base_url(input("Platform URL (e.g. https://xyz.supabase.co): ").strip())
    client = ConsoleClient(controller)
    if controller.resume():
        client.subscribe_notices()

    while True:
        if not controller.signed_in:
            print("\nMenu: [l]ogin, [q]uit")
            choice = input("> ").strip().lower()
            if choice == "q":
                sys.exit(0)
            if choice == "l":
                client.login()
            continue
        while get_token():
            print("\nUser menu: [c]onversations, [f]riends, [n]otifications, [s]ettings, [o]logout")
            sub = input("> ").strip().lower()
            controller.tick()
            if sub == "o":
                client.logout()
                break
            if sub == "c":
                client.manage_conversations()
            if sub == "f":
                client.friends()
            if sub == "n":
                notifications = controller.notifications
                notifications.load()
                for n in controller.store.notifications.value:
                    print(f"{' ' if n.is_read else '*'} {n.title}: {n.message or ''}")
                notifications.mark_all_read()
            if sub == "s":
                client.settings()


if __name__ == "__main__":
    main()
