"""PyQt window classes for the Campus Connect GUI."""
from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional

from PyQt6.QtCore import QModelIndex, QObject, Qt, QTimer, pyqtSignal
from PyQt6.QtGui import QColor
from PyQt6.QtWidgets import (
    QAbstractItemView,
    QApplication,
    QCheckBox,
    QDialog,
    QFileDialog,
    QFormLayout,
    QGroupBox,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QListWidget,
    QListWidgetItem,
    QMainWindow,
    QMenu,
    QMessageBox,
    QPushButton,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from ..config import TICK_INTERVAL_MS
from ..errors import PlatformError
from ..logging_config import configure_logging
from ..receipts import visible_status
from ..store import Notice, ThreadView
from ..tasks import ThreadPoolRunner
from ...shared.schemas import Conversation, Message
from .app import ChatController
from .styles import (
    ACCENT,
    BORDER_RADIUS,
    ERROR,
    OWN_BUBBLE,
    PADDING,
    PEER_BUBBLE,
    PRIMARY_BG,
    REACTION_CHOICES,
    SIDEBAR_BG,
    STATUS_MARKS,
    TEXT_MUTED,
    TEXT_PRIMARY,
)


class Dispatcher(QObject):
    """Runs posted callables on the GUI thread via a queued signal."""

    posted = pyqtSignal(object)

    def __init__(self):
        super().__init__()
        self.posted.connect(self._run)

    def post(self, fn: Callable[[], None]) -> None:
        self.posted.emit(fn)

    @staticmethod
    def _run(fn: Callable[[], None]) -> None:
        fn()


class PlatformConfigDialog(QDialog):
    """Dialog used to collect the platform URL on first launch."""

    def __init__(self, parent: QWidget | None = None, prefill: str | None = None):
        super().__init__(parent)
        self.setWindowTitle("Platform configuration")
        layout = QFormLayout(self)
        self.url_input = QLineEdit(prefill or "https://<project>.supabase.co")
        layout.addRow("Platform URL", self.url_input)
        btn = QPushButton("Save & connect")
        btn.clicked.connect(self.accept)
        layout.addWidget(btn)

    def platform_url(self) -> str:
        return self.url_input.text().strip()


class LoginWindow(QMainWindow):
    """Email and password sign-in window."""

    logged_in = pyqtSignal()

    def __init__(self, controller: ChatController):
        super().__init__()
        self.controller = controller
        self.setWindowTitle("Campus Connect - Sign in")
        self.resize(480, 260)
        self._ensure_platform_url()
        self._build_ui()

    def _ensure_platform_url(self) -> None:
        if not self.controller.base_url:
            dialog = PlatformConfigDialog(self)
            if dialog.exec() == QDialog.DialogCode.Accepted:
                self.controller.set_base_url(dialog.platform_url())
            else:
                self.close()

    def _build_ui(self) -> None:
        widget = QWidget()
        layout = QFormLayout(widget)
        self.email_input = QLineEdit()
        self.password_input = QLineEdit()
        self.password_input.setEchoMode(QLineEdit.EchoMode.Password)
        layout.addRow("Email", self.email_input)
        layout.addRow("Password", self.password_input)
        self.login_error = QLabel()
        self.login_error.setStyleSheet(f"color: {ERROR}")
        login_btn = QPushButton("Sign in")
        login_btn.clicked.connect(self._login)
        layout.addRow(self.login_error)
        layout.addRow(login_btn)
        self.setCentralWidget(widget)

    def _login(self) -> None:
        self.login_error.clear()
        try:
            self.controller.sign_in(self.email_input.text().strip(), self.password_input.text())
        except (PlatformError, RuntimeError) as exc:
            self.login_error.setText(str(exc))
            return
        self.password_input.clear()
        self.logged_in.emit()


class SettingsDialog(QDialog):
    """Messaging privacy settings and sign-out."""

    logout_requested = pyqtSignal()

    def __init__(self, controller: ChatController, parent: QWidget | None = None):
        super().__init__(parent)
        self.controller = controller
        self.setWindowTitle("Settings")
        self.resize(380, 200)
        self._build_ui()

    def _build_ui(self) -> None:
        layout = QVBoxLayout(self)
        user = self.controller.user or {}
        layout.addWidget(QLabel(f"Signed in as <b>{user.get('email', '')}</b>"))

        current = self.controller.store.settings.value
        self.receipts_box = QCheckBox("Send read receipts")
        self.receipts_box.setChecked(current.read_receipts_enabled)
        self.receipts_box.toggled.connect(lambda on: self._set("read_receipts_enabled", on))
        self.typing_box = QCheckBox("Show typing indicators")
        self.typing_box.setChecked(current.typing_indicators_enabled)
        self.typing_box.toggled.connect(lambda on: self._set("typing_indicators_enabled", on))
        layout.addWidget(self.receipts_box)
        layout.addWidget(self.typing_box)

        hint = QLabel("Turning read receipts off also hides when others have seen your messages")
        hint.setWordWrap(True)
        hint.setStyleSheet(f"color: {TEXT_MUTED}")
        layout.addWidget(hint)

        btn_row = QHBoxLayout()
        logout_btn = QPushButton("Logout")
        logout_btn.clicked.connect(self._logout)
        btn_row.addStretch()
        btn_row.addWidget(logout_btn)
        layout.addLayout(btn_row)

    def _set(self, key: str, value: bool) -> None:
        self.controller.messaging.set_setting(key, value)

    def _logout(self) -> None:
        self.logout_requested.emit()
        self.accept()


class MainChatWindow(QMainWindow):
    """Main chat UI with the conversation sidebar and the open thread."""

    logged_out = pyqtSignal()

    def __init__(self, controller: ChatController):
        super().__init__()
        self.controller = controller
        self.reply_to: Optional[str] = None
        self._rendering = False
        self._unsubscribers: List[Callable[[], None]] = []
        self.setWindowTitle("Campus Connect")
        self.resize(1024, 720)
        self._build_ui()
        self._subscribe()
        self.ticker = QTimer(self)
        self.ticker.timeout.connect(self.controller.tick)
        self.ticker.start(TICK_INTERVAL_MS)

    @property
    def messaging(self):
        return self.controller.messaging

    def _build_ui(self) -> None:
        container = QWidget()
        layout = QHBoxLayout(container)
        layout.addWidget(self._build_sidebar(), 1)
        layout.addWidget(self._build_main_area(), 3)
        container.setStyleSheet(
            f"QWidget {{ background: {PRIMARY_BG}; color: {TEXT_PRIMARY}; }}\n"
            f"QLineEdit, QTextEdit {{ background: white; border: 1px solid #d1d5db; border-radius: {BORDER_RADIUS}px; }}\n"
            f"QPushButton {{ background: {ACCENT}; color: white; padding: 6px 12px; border-radius: {BORDER_RADIUS}px; }}\n"
            f"QPushButton:hover {{ background: #2563eb; }}"
        )
        self.setCentralWidget(container)
        self.connection_label = QLabel()
        self.statusBar().addPermanentWidget(self.connection_label)

    def _build_sidebar(self) -> QWidget:
        widget = QWidget()
        widget.setStyleSheet(f"background: {SIDEBAR_BG}; color: white")
        layout = QVBoxLayout(widget)
        layout.setContentsMargins(PADDING, PADDING, PADDING, PADDING)

        user = self.controller.user or {}
        profile_box = QGroupBox("Profile")
        profile_layout = QVBoxLayout(profile_box)
        profile_layout.addWidget(QLabel(user.get("email", "")))
        settings_btn = QPushButton("Settings")
        settings_btn.clicked.connect(self._open_settings)
        profile_layout.addWidget(settings_btn)
        layout.addWidget(profile_box)

        search_box = QGroupBox("Find people")
        search_layout = QHBoxLayout(search_box)
        self.search_input = QLineEdit()
        self.search_input.setPlaceholderText("Name")
        search_btn = QPushButton("Search")
        search_btn.clicked.connect(self._search_user)
        search_layout.addWidget(self.search_input)
        search_layout.addWidget(search_btn)
        layout.addWidget(search_box)

        self.chat_list = QListWidget()
        self.chat_list.setDragDropMode(QAbstractItemView.DragDropMode.InternalMove)
        self.chat_list.setContextMenuPolicy(Qt.ContextMenuPolicy.CustomContextMenu)
        self.chat_list.customContextMenuRequested.connect(self._conversation_menu)
        self.chat_list.itemClicked.connect(self._chat_selected)
        self.chat_list.model().rowsMoved.connect(self._rows_moved)
        layout.addWidget(self.chat_list, 1)
        return widget

    def _build_main_area(self) -> QWidget:
        widget = QWidget()
        layout = QVBoxLayout(widget)
        self.chat_title = QLabel("Select a chat")
        self.chat_title.setStyleSheet("font-size: 16px; font-weight: bold")
        layout.addWidget(self.chat_title)
        self.pins_label = QLabel()
        self.pins_label.setStyleSheet(f"color: {TEXT_MUTED}")
        layout.addWidget(self.pins_label)

        self.messages_view = QListWidget()
        self.messages_view.setWordWrap(True)
        self.messages_view.setContextMenuPolicy(Qt.ContextMenuPolicy.CustomContextMenu)
        self.messages_view.customContextMenuRequested.connect(self._message_menu)
        layout.addWidget(self.messages_view, 1)

        self.typing_label = QLabel()
        self.typing_label.setStyleSheet(f"color: {TEXT_MUTED}; font-style: italic")
        layout.addWidget(self.typing_label)

        self.failed_row = QWidget()
        failed_layout = QHBoxLayout(self.failed_row)
        self.failed_label = QLabel()
        self.failed_label.setStyleSheet(f"color: {ERROR}")
        retry_btn = QPushButton("Retry")
        retry_btn.clicked.connect(self._retry_failed)
        failed_layout.addWidget(self.failed_label, 1)
        failed_layout.addWidget(retry_btn)
        self.failed_row.hide()
        layout.addWidget(self.failed_row)

        self.reply_label = QLabel()
        self.reply_label.hide()
        layout.addWidget(self.reply_label)

        input_row = QHBoxLayout()
        self.message_input = QTextEdit()
        self.message_input.setFixedHeight(80)
        self.message_input.textChanged.connect(self._typing)
        input_row.addWidget(self.message_input, 1)
        image_btn = QPushButton("Image")
        image_btn.clicked.connect(self._send_image)
        send_btn = QPushButton("Send")
        send_btn.clicked.connect(self._send_message)
        input_row.addWidget(image_btn)
        input_row.addWidget(send_btn)
        layout.addLayout(input_row)
        return widget

    def _subscribe(self) -> None:
        store = self.controller.store
        self._unsubscribers = [
            store.conversations.subscribe(lambda _: self._render_conversations()),
            store.profiles.subscribe(lambda _: self._render_conversations()),
            store.thread.subscribe(self._render_thread),
            store.settings.subscribe(lambda _: self._render_thread(store.thread.value)),
            store.failed_sends.subscribe(lambda _: self._render_failed()),
            store.notices.subscribe(self._show_notice),
            store.realtime_connected.subscribe(self._render_connection),
        ]
        self._render_conversations()
        self._render_connection(store.realtime_connected.value)

    # Conversation list

    def _render_conversations(self) -> None:
        store = self.controller.store
        me = self.controller.me
        self._rendering = True
        try:
            self.chat_list.clear()
            for conv in store.conversations.value:
                item = QListWidgetItem(self._conversation_label(conv, me))
                item.setData(Qt.ItemDataRole.UserRole, conv.id)
                self.chat_list.addItem(item)
        finally:
            self._rendering = False

    def _conversation_label(self, conv: Conversation, me: str) -> str:
        name = self.controller.store.display_name(conv.peer_of(me))
        prefix = "\U0001F4CC " if conv.is_pinned_for(me) else ""
        muted = " \U0001F507" if conv.is_muted_for(me) else ""
        unread = f"  ({conv.unread_count})" if conv.unread_count else ""
        return f"{prefix}{name}{muted}{unread}"

    def _conversation_at(self, row: int) -> Optional[Conversation]:
        item = self.chat_list.item(row)
        if item is None:
            return None
        return self.messaging.conversations.get(item.data(Qt.ItemDataRole.UserRole))

    def _rows_moved(self, _parent: QModelIndex, start: int, _end: int, _dest: QModelIndex, row: int) -> None:
        if self._rendering:
            return
        target = row - 1 if row > start else row
        item = self.chat_list.item(target)
        if item is None:
            return
        if not self.messaging.reorder(item.data(Qt.ItemDataRole.UserRole), target):
            self._render_conversations()

    def _conversation_menu(self, pos) -> None:
        item = self.chat_list.itemAt(pos)
        if item is None:
            return
        conv = self.messaging.conversations.get(item.data(Qt.ItemDataRole.UserRole))
        if conv is None:
            return
        me = self.controller.me
        menu = QMenu(self)
        pin = menu.addAction("Unpin" if conv.is_pinned_for(me) else "Pin")
        mute = menu.addAction("Unmute" if conv.is_muted_for(me) else "Mute")
        unread = menu.addAction("Mark as unread")
        chosen = menu.exec(self.chat_list.mapToGlobal(pos))
        if chosen is pin:
            self.messaging.toggle_pin(conv.id)
        elif chosen is mute:
            self.messaging.toggle_mute(conv.id)
        elif chosen is unread:
            self.messaging.mark_unread(conv.id)

    def _chat_selected(self, item: QListWidgetItem) -> None:
        conv = self.messaging.conversations.get(item.data(Qt.ItemDataRole.UserRole))
        if conv is not None:
            self._open_peer(conv.peer_of(self.controller.me))

    def _open_peer(self, peer_id: str) -> None:
        self.reply_to = None
        self.reply_label.hide()
        self.chat_title.setText(f"Chat with {self.controller.store.display_name(peer_id)}")
        self.messaging.open_conversation(peer_id)

    # Thread

    def _render_thread(self, view: ThreadView) -> None:
        store = self.controller.store
        me = self.controller.me
        self.messages_view.clear()
        for msg in view.messages:
            item = QListWidgetItem(self._format_message(msg, view))
            item.setData(Qt.ItemDataRole.UserRole, msg.id)
            own = msg.sender_id == me
            item.setTextAlignment(Qt.AlignmentFlag.AlignRight if own else Qt.AlignmentFlag.AlignLeft)
            item.setBackground(QColor(OWN_BUBBLE if own else PEER_BUBBLE))
            item.setToolTip(msg.image_url or "")
            self.messages_view.addItem(item)
        self.messages_view.scrollToBottom()
        name = store.display_name(view.peer_id) if view.peer_id else ""
        self.typing_label.setText(f"{name} is typing..." if view.peer_typing else "")
        pinned = [m.content or "Image" for p in view.pins for m in view.messages if m.id == p.message_id]
        self.pins_label.setText("\U0001F4CC " + " | ".join(pinned) if pinned else "")

    def _format_message(self, msg: Message, view: ThreadView) -> str:
        me = self.controller.me
        who = "you" if msg.sender_id == me else self.controller.store.display_name(msg.sender_id)
        body = msg.content or "[image]"
        if msg.reply_to:
            replied = next((m for m in view.messages if m.id == msg.reply_to), None)
            if replied is not None:
                body = f"> {(replied.content or '[image]')[:40]}\n{body}"
        status = visible_status(msg, me, self.controller.store.settings.value)
        mark = f"  {STATUS_MARKS[status.value]}" if status else ""
        reactions = " ".join(f"{r.emoji} {r.count}" for r in view.reactions.get(msg.id, ()))
        text = f"[{msg.created_at.astimezone():%H:%M}] {who}: {body}{mark}"
        return f"{text}\n{reactions}" if reactions else text

    def _selected_message(self, pos) -> Optional[Message]:
        item = self.messages_view.itemAt(pos)
        thread = self.messaging.thread
        if item is None or thread is None:
            return None
        return thread.get(item.data(Qt.ItemDataRole.UserRole))

    def _message_menu(self, pos) -> None:
        msg = self._selected_message(pos)
        if msg is None or msg.is_temporary:
            return
        view = self.controller.store.thread.value
        menu = QMenu(self)
        react_menu = menu.addMenu("React")
        emoji_actions = {react_menu.addAction(e): e for e in REACTION_CHOICES}
        reply = menu.addAction("Reply")
        copy = menu.addAction("Copy") if msg.content else None
        is_pinned = any(p.message_id == msg.id for p in view.pins)
        pin = menu.addAction("Unpin" if is_pinned else "Pin")
        delete = menu.addAction("Delete for me")
        unsend = menu.addAction("Unsend") if self.messaging.can_unsend(msg) else None
        chosen = menu.exec(self.messages_view.mapToGlobal(pos))
        if chosen is None:
            return
        if chosen in emoji_actions:
            self.messaging.react(msg.id, emoji_actions[chosen])
        elif chosen is reply:
            self.reply_to = msg.id
            self.reply_label.setText(f"Replying to: {(msg.content or '[image]')[:50]}")
            self.reply_label.show()
        elif copy is not None and chosen is copy:
            QApplication.clipboard().setText(msg.content)
        elif chosen is pin:
            if is_pinned:
                self.messaging.unpin_message(msg.id)
            else:
                self.messaging.pin_message(msg.id)
        elif chosen is delete:
            self.messaging.delete_for_me(msg.id)
        elif unsend is not None and chosen is unsend:
            self.messaging.unsend(msg.id)

    def _render_failed(self) -> None:
        failed = self.controller.store.failed_sends.value
        if not failed:
            self.failed_row.hide()
            return
        self.failed_label.setText(f"{len(failed)} message(s) not delivered")
        self.failed_row.show()

    def _retry_failed(self) -> None:
        for failed in self.controller.store.failed_sends.value:
            self.messaging.retry_failed(failed.temp_id)

    def _typing(self) -> None:
        if self.message_input.toPlainText():
            self.messaging.user_typing()

    def _send_message(self) -> None:
        if self.messaging.thread is None:
            QMessageBox.warning(self, "No chat", "Select a chat first")
            return
        text = self.message_input.toPlainText().strip()
        if not text:
            return
        self.messaging.send_message(text=text, reply_to=self.reply_to)
        self.message_input.clear()
        self.reply_to = None
        self.reply_label.hide()

    def _send_image(self) -> None:
        if self.messaging.thread is None:
            QMessageBox.warning(self, "No chat", "Select a chat first")
            return
        filename, _ = QFileDialog.getOpenFileName(self, "Send image", "", "Images (*.png *.jpg *.jpeg *.gif *.webp)")
        if not filename:
            return
        path = Path(filename)
        self.messaging.send_message(image=(path.name, path.read_bytes()), reply_to=self.reply_to)

    # Status

    def _show_notice(self, notice: Optional[Notice]) -> None:
        if notice is None:
            return
        text = f"{notice.title}: {notice.description}" if notice.description else notice.title
        self.statusBar().showMessage(text, 6000)

    def _render_connection(self, connected: bool) -> None:
        self.connection_label.setText("Live" if connected else "Polling")

    def _search_user(self) -> None:
        name = self.search_input.text().strip()
        if not name:
            return
        try:
            profiles = self.controller.search_profiles(name)
        except PlatformError as exc:
            QMessageBox.warning(self, "Error", f"Search failed: {exc}")
            return
        if not profiles:
            QMessageBox.information(self, "Not found", "No one with that name")
            return
        peer = profiles[0]
        self.controller.store.merge_profiles([peer])
        self._open_peer(peer.user_id)

    def _open_settings(self) -> None:
        dialog = SettingsDialog(self.controller, self)
        dialog.logout_requested.connect(self._handle_logout)
        dialog.exec()

    def _handle_logout(self) -> None:
        self.ticker.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self.controller.sign_out()
        self.logged_out.emit()
        self.close()


class ChatApplication:
    """Top-level class wiring windows together."""

    def __init__(self):
        configure_logging()
        self.app = QApplication.instance() or QApplication([])
        self.dispatcher = Dispatcher()
        self.runner = ThreadPoolRunner(self.dispatcher.post)
        self.controller = ChatController(runner=self.runner, post=self.dispatcher.post)
        self.login_window = LoginWindow(self.controller)
        self.main_window: Optional[MainChatWindow] = None
        self.login_window.logged_in.connect(self._on_logged_in)

    def _on_logged_in(self) -> None:
        self.main_window = MainChatWindow(self.controller)
        self.main_window.logged_out.connect(self._show_login)
        self.login_window.hide()
        self.main_window.show()

    def _show_login(self) -> None:
        self.login_window.show()
        if self.main_window:
            self.main_window.close()
            self.main_window = None

    def run(self) -> int:
        if self.controller.resume():
            self._on_logged_in()
        else:
            self.login_window.show()
        code = self.app.exec()
        self.runner.shutdown()
        return code


__all__ = ["ChatApplication", "LoginWindow", "MainChatWindow", "SettingsDialog"]
