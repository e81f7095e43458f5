"""Shared style constants for the GUI client."""

SIDEBAR_BG = "#1f2933"
PRIMARY_BG = "#f5f7fa"
ACCENT = "#3b82f6"
TEXT_PRIMARY = "#1f2933"
TEXT_MUTED = "#6b7280"
ERROR = "#dc2626"
OWN_BUBBLE = "#dbeafe"
PEER_BUBBLE = "#e5e7eb"
PADDING = 8
BORDER_RADIUS = 6

REACTION_CHOICES = ("\U0001F44D", "❤️", "\U0001F602", "\U0001F62E", "\U0001F622")

STATUS_MARKS = {
    "sending": "⏳",
    "sent": "✓",
    "delivered": "✓✓",
    "seen": "✓✓ seen",
}
