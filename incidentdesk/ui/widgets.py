"""
incidentdesk – themed HUD primitives (pulse dots, live graphs, status pills)
"""
from __future__ import annotations

import math
import time as _time
from typing import List, Optional

from PySide6 import QtCore, QtWidgets
from PySide6.QtCore import Qt, QTimer
from PySide6.QtGui import (
    QColor, QPainter, QPen, QBrush, QFont, QLinearGradient,
    QPainterPath,
)

# ──────────────────────────────────────────────
# Palette
# ──────────────────────────────────────────────
PALETTE = {
    "bg_deep":       "#07090d",
    "bg_card":       "#0f1318",
    "border":        "#1c2430",
    "text_primary":  "#e2e6ec",
    "text_muted":    "#6b7280",
    "accent_cyan":   "#22d3ee",
    "accent_blue":   "#3b82f6",
    "accent_purple": "#a78bfa",
    "green":         "#22c55e",
    "yellow":        "#eab308",
    "orange":        "#f97316",
    "red":           "#ef4444",
}

STATUS_COLORS = {
    "NOMINAL":              PALETTE["green"],
    "WARNING":              PALETTE["yellow"],
    "CRITICAL":             PALETTE["red"],
    "ZOMBIE_KERNEL":        PALETTE["red"],
    "C2_FRACTURE_DETECTED": PALETTE["red"],
    "UPLINK_FAILURE":       PALETTE["orange"],
    "UPLINK_RECONNECTING":  PALETTE["yellow"],
    "UPLINK_SIMULATION":    PALETTE["accent_purple"],
    "EXECUTING_SCHEDULED_SENTINEL_PROTOCOL":     PALETTE["accent_blue"],
    "EMERGENCY_ADVERSARY_EMULATION_IN_PROGRESS": PALETTE["orange"],
}

PHASE_COLORS = {
    "IDLE":      PALETTE["green"],
    "HOLD":      PALETTE["yellow"],
    "FAILSAFE":  PALETTE["orange"],
    "EXECUTING": PALETTE["red"],
}

KIND_COLORS = {
    "incident": PALETTE["red"],
    "traffic":  PALETTE["accent_blue"],
    "uplink":   PALETTE["accent_purple"],
    "audit":    PALETTE["orange"],
    "system":   PALETTE["accent_cyan"],
}


def fmt_countdown(seconds: Optional[int]) -> str:
    if seconds is None:
        return "--:--"
    m, s = divmod(max(0, int(seconds)), 60)
    return f"{m:02d}:{s:02d}"


# ──────────────────────────────────────────────
# _PulseHub – one timer animates every dot
# ──────────────────────────────────────────────
class _PulseHub(QtCore.QObject):
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            obj = super().__new__(cls)
            obj._ready = False
            cls._instance = obj
        return cls._instance

    def __init__(self):
        if self._ready:
            return
        super().__init__()
        self._ready = True
        self._dots: List["PulsingDot"] = []
        self._t0 = _time.monotonic()
        self._timer = QTimer(self)
        self._timer.setInterval(60)
        self._timer.timeout.connect(self._tick)
        self._timer.start()

    def add(self, dot: "PulsingDot"):
        self._dots.append(dot)

    def remove(self, dot: "PulsingDot"):
        if dot in self._dots:
            self._dots.remove(dot)

    def _tick(self):
        t = _time.monotonic() - self._t0
        for dot in self._dots:
            # fast dots (alarm) beat at twice the rate
            speed = 5.2 if dot.fast else 2.6
            dot._pulse = (math.sin(t * speed - math.pi / 2) + 1.0) * 0.5
            dot.update()


class PulsingDot(QtWidgets.QWidget):
    def __init__(self, color: str = PALETTE["green"], radius: int = 6, parent=None):
        super().__init__(parent)
        self._color = QColor(color)
        self._radius = radius
        self._pulse = 0.0
        self.fast = False
        self.setFixedSize(radius * 4, radius * 4)
        _PulseHub().add(self)

    def set_color(self, color: str, fast: bool = False):
        self._color = QColor(color)
        self.fast = fast
        self.update()

    def closeEvent(self, e):
        _PulseHub().remove(self)
        super().closeEvent(e)

    def paintEvent(self, _event):
        p = QPainter(self)
        p.setRenderHint(QPainter.Antialiasing)
        cx, cy = self.width() / 2, self.height() / 2
        r = self._radius
        ring = r + self._pulse * r * 0.9

        halo = QColor(self._color)
        halo.setAlpha(int(60 * (1.0 - self._pulse)))
        p.setPen(Qt.NoPen)
        p.setBrush(QBrush(halo))
        p.drawEllipse(QtCore.QRectF(cx - ring, cy - ring, ring * 2, ring * 2))
        p.setBrush(QBrush(self._color))
        p.drawEllipse(QtCore.QRectF(cx - r, cy - r, r * 2, r * 2))
        p.end()


class AnimatedCounter(QtWidgets.QLabel):
    """Label that eases towards its target value; idle once it arrives."""

    def __init__(self, fmt: str = "{:.0f}", parent=None):
        super().__init__(fmt.format(0), parent)
        self._fmt = fmt
        self._shown = 0.0
        self._target = 0.0
        self._timer = QTimer(self)
        self._timer.setInterval(32)
        self._timer.timeout.connect(self._step)

    def set_value(self, value: float):
        self._target = float(value)
        if not self._timer.isActive():
            self._timer.start()

    def _step(self):
        gap = self._target - self._shown
        if abs(gap) < 0.1:
            self._shown = self._target
            self._timer.stop()
        else:
            self._shown += gap * 0.22
        self.setText(self._fmt.format(self._shown))


# ──────────────────────────────────────────────
# LiveGraph – sparkline on a fixed 0-100 scale with a threshold line
# ──────────────────────────────────────────────
class LiveGraph(QtWidgets.QWidget):
    def __init__(self, max_points: int = 60, color: str = PALETTE["accent_cyan"],
                 ceiling: Optional[float] = 100.0, threshold: Optional[float] = None, parent=None):
        super().__init__(parent)
        self._color = QColor(color)
        self._max = max_points
        self._ceiling = ceiling
        self._threshold = threshold
        self._data: List[float] = []
        self.setMinimumHeight(48)

    def push(self, value: float):
        self._data.append(value)
        del self._data[:-self._max]
        self.update()

    def _scale(self):
        if self._ceiling is not None:
            return 0.0, self._ceiling
        lo, hi = min(self._data), max(self._data)
        return lo, (hi if hi != lo else lo + 1.0)

    def paintEvent(self, _event):
        if len(self._data) < 2:
            return
        p = QPainter(self)
        p.setRenderHint(QPainter.Antialiasing)
        w, h = self.width(), self.height()
        pad = 4
        lo, hi = self._scale()
        span = hi - lo
        step_x = (w - pad * 2) / max(self._max - 1, 1)
        x0 = pad + (self._max - len(self._data)) * step_x

        def y_of(v: float) -> float:
            v = min(max(v, lo), hi)
            return h - pad - ((v - lo) / span) * (h - pad * 2)

        if self._threshold is not None:
            ty = y_of(self._threshold)
            dash = QPen(QColor(PALETTE["red"]), 1, Qt.DashLine)
            p.setPen(dash)
            p.drawLine(QtCore.QPointF(pad, ty), QtCore.QPointF(w - pad, ty))

        line = QPainterPath()
        for i, v in enumerate(self._data):
            pt = QtCore.QPointF(x0 + i * step_x, y_of(v))
            if i == 0:
                line.moveTo(pt)
            else:
                line.lineTo(pt)
        last = line.currentPosition()

        area = QPainterPath(line)
        area.lineTo(last.x(), h)
        area.lineTo(x0, h)
        area.closeSubpath()
        grad = QLinearGradient(0, 0, 0, h)
        top, bottom = QColor(self._color), QColor(self._color)
        top.setAlpha(90)
        bottom.setAlpha(0)
        grad.setColorAt(0, top)
        grad.setColorAt(1, bottom)
        p.setPen(Qt.NoPen)
        p.setBrush(QBrush(grad))
        p.drawPath(area)

        pen = QPen(self._color, 2)
        pen.setCapStyle(Qt.RoundCap)
        pen.setJoinStyle(Qt.RoundJoin)
        p.setPen(pen)
        p.setBrush(Qt.NoBrush)
        p.drawPath(line)

        p.setPen(Qt.NoPen)
        p.setBrush(QBrush(self._color))
        p.drawEllipse(last, 3, 3)
        p.end()


class MetricCard(QtWidgets.QWidget):
    """Title row, eased value, sub caption and a live graph in a rounded card."""

    def __init__(self, title: str, unit: str = "%", color: str = PALETTE["accent_cyan"],
                 threshold: Optional[float] = None, ceiling: Optional[float] = 100.0, parent=None):
        super().__init__(parent)
        self._color = color

        layout = QtWidgets.QVBoxLayout(self)
        layout.setContentsMargins(16, 14, 16, 10)
        layout.setSpacing(4)

        header = QtWidgets.QHBoxLayout()
        title_lbl = QtWidgets.QLabel(title.upper())
        title_lbl.setStyleSheet(f"""
            font-size: 11px; font-weight: 600;
            color: {PALETTE['text_muted']}; letter-spacing: 1.5px;
        """)
        header.addWidget(title_lbl, 1)
        self.dot = PulsingDot(color=color, radius=4)
        header.addWidget(self.dot)
        layout.addLayout(header)

        self.value_label = AnimatedCounter("{:.1f}" + unit if unit == "%" else "{:.0f}" + unit)
        self.value_label.setStyleSheet(f"""
            font-size: 26px; font-weight: 700;
            color: {PALETTE['text_primary']};
            font-family: 'Consolas', 'Courier New', monospace;
        """)
        layout.addWidget(self.value_label)

        self.sub_label = QtWidgets.QLabel("")
        self.sub_label.setStyleSheet(f"font-size: 11px; color: {PALETTE['text_muted']}; font-family: monospace;")
        layout.addWidget(self.sub_label)

        self.graph = LiveGraph(color=color, ceiling=ceiling, threshold=threshold)
        layout.addWidget(self.graph, 1)

    def push(self, value: float, caption: str = "", alarm: bool = False):
        self.value_label.set_value(value)
        self.graph.push(value)
        self.sub_label.setText(caption)
        self.dot.set_color(PALETTE["red"] if alarm else self._color, fast=alarm)

    def paintEvent(self, event):
        p = QPainter(self)
        p.setRenderHint(QPainter.Antialiasing)
        rect = self.rect()
        p.setPen(QPen(QColor(PALETTE["border"]), 1))
        p.setBrush(QBrush(QColor(PALETTE["bg_card"])))
        p.drawRoundedRect(rect, 14, 14)

        accent = QColor(self._color)
        accent.setAlpha(180)
        pen = QPen(accent, 2.5)
        pen.setCapStyle(Qt.RoundCap)
        p.setPen(pen)
        p.drawLine(QtCore.QPointF(20, 1.5), QtCore.QPointF(rect.width() - 20, 1.5))
        p.end()
        super().paintEvent(event)


# ──────────────────────────────────────────────
# Pills
# ──────────────────────────────────────────────
class _Pill(QtWidgets.QWidget):
    colors: dict = {}

    def __init__(self, text: str, width: int, height: int, point_size: int, parent=None):
        super().__init__(parent)
        self._text = text
        self._point_size = point_size
        self.setFixedSize(width, height)

    def text(self) -> str:
        return self._text

    def set_text(self, text: str):
        self._text = text
        self.update()

    def _label(self) -> str:
        return self._text.upper()

    def paintEvent(self, _event):
        p = QPainter(self)
        p.setRenderHint(QPainter.Antialiasing)
        color = QColor(self.colors.get(self._text, PALETTE["text_muted"]))
        bg = QColor(color)
        bg.setAlpha(26)
        p.setPen(QPen(color, 1))
        p.setBrush(QBrush(bg))
        radius = self.height() / 2
        p.drawRoundedRect(self.rect().adjusted(0, 0, -1, -1), radius, radius)
        p.setFont(QFont("Consolas", self._point_size, QFont.Bold))
        p.drawText(self.rect(), Qt.AlignCenter, self._label())
        p.end()


class StatusPill(_Pill):
    colors = STATUS_COLORS

    def __init__(self, status: str = "NOMINAL", parent=None):
        super().__init__(status, 330, 24, 9, parent)

    def _label(self) -> str:
        return self._text.replace("_", " ")


class PhaseBadge(_Pill):
    colors = PHASE_COLORS

    def __init__(self, phase: str = "IDLE", parent=None):
        super().__init__(phase, 96, 24, 9, parent)


class KindBadge(_Pill):
    colors = KIND_COLORS

    def __init__(self, kind: str = "system", parent=None):
        super().__init__(kind, 78, 20, 8, parent)
