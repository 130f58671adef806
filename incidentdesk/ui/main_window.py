"""
incidentdesk – operator HUD
"""
from __future__ import annotations

import time
from typing import List

from PySide6 import QtCore, QtWidgets
from PySide6.QtCore import Qt, QTimer
from PySide6.QtGui import QColor, QPainter, QPen, QBrush, QLinearGradient

from ..config import AppConfig
from ..coordinator import IncidentCoordinator
from ..models import (
    TelemetrySample, IncidentState, Classification, ChannelResult, SourceTag, RemediationPhase,
)
from ..scheduler import local_time
from ..store import Store

from .widgets import (
    PALETTE, STATUS_COLORS, PHASE_COLORS,
    fmt_countdown,
    MetricCard, PulsingDot, StatusPill, PhaseBadge, KindBadge,
)

_MONO = "font-family: 'Consolas', monospace;"


def _set_cell(table: QtWidgets.QTableWidget, row: int, col: int, text: str, color: str = ""):
    item = QtWidgets.QTableWidgetItem(text)
    item.setFlags(item.flags() & ~Qt.ItemIsEditable)
    if color:
        item.setForeground(QColor(color))
    table.setItem(row, col, item)


# ──────────────────────────────────────────────
# TopBar
# ──────────────────────────────────────────────
class TopBar(QtWidgets.QWidget):
    def __init__(self, instance_id: str, parent=None):
        super().__init__(parent)
        self.setFixedHeight(52)
        lay = QtWidgets.QHBoxLayout(self)
        lay.setContentsMargins(24, 0, 24, 0)
        lay.setSpacing(12)

        logo = QtWidgets.QLabel()
        logo.setText(
            f'<span style="font-family:Consolas,monospace;font-size:20px;'
            f'font-weight:800;color:{PALETTE["accent_cyan"]};letter-spacing:4px;">'
            f'INCIDENT</span>'
            f'<span style="font-family:Consolas,monospace;font-size:20px;'
            f'font-weight:300;color:{PALETTE["text_muted"]};letter-spacing:4px;">'
            f'DESK</span>'
        )
        lay.addWidget(logo)

        target = QtWidgets.QLabel(f"TARGET {instance_id}")
        target.setStyleSheet(f"{_MONO} font-size: 11px; color: {PALETTE['text_muted']};")
        lay.addWidget(target)
        lay.addStretch(1)

        self.shift_label = QtWidgets.QLabel("")
        self.shift_label.setStyleSheet(f"{_MONO} font-size: 11px; font-weight: 700; "
                                       f"color: {PALETTE['accent_purple']}; letter-spacing: 2px;")
        lay.addWidget(self.shift_label)

        self.live_dot = PulsingDot(color=PALETTE["green"], radius=5)
        lay.addWidget(self.live_dot)

        self._clock = QtWidgets.QLabel("")
        self._clock.setStyleSheet(f"{_MONO} font-size: 13px; color: {PALETTE['text_muted']};")
        lay.addWidget(self._clock)

    def refresh(self, shift: str, alarm: bool):
        self._clock.setText(local_time().strftime("%H:%M:%S CST"))
        self.shift_label.setText(shift.replace("_", " "))
        self.live_dot.set_color(PALETTE["red"] if alarm else PALETTE["green"], fast=alarm)

    def paintEvent(self, _event):
        p = QPainter(self)
        w, h = self.width(), self.height()
        p.setPen(Qt.NoPen)
        p.setBrush(QBrush(QColor(PALETTE["bg_card"])))
        p.drawRect(0, 0, w, h)
        grad = QLinearGradient(0, h - 1, w, h - 1)
        grad.setColorAt(0, QColor("#00000000"))
        grad.setColorAt(0.5, QColor(PALETTE["accent_cyan"]))
        grad.setColorAt(1, QColor("#00000000"))
        p.setPen(QPen(QBrush(grad), 1.5))
        p.drawLine(0, h - 1, w, h - 1)
        p.end()
        super().paintEvent(_event)


# ──────────────────────────────────────────────
# FlashBar – transient operator feedback
# ──────────────────────────────────────────────
class FlashBar(QtWidgets.QWidget):
    IDLE_TEXT = "Sentinel watching …"

    def __init__(self, parent=None):
        super().__init__(parent)
        self.setFixedHeight(34)
        lay = QtWidgets.QHBoxLayout(self)
        lay.setContentsMargins(20, 0, 20, 0)
        self._dot = PulsingDot(color=PALETTE["green"], radius=4)
        lay.addWidget(self._dot)
        self._label = QtWidgets.QLabel(self.IDLE_TEXT)
        lay.addWidget(self._label, 1)
        self._timer = QTimer(self)
        self._timer.setSingleShot(True)
        self._timer.setInterval(4000)
        self._timer.timeout.connect(self._reset)
        self._paint(PALETTE["text_muted"])

    def flash(self, msg: str, color: str = PALETTE["green"]):
        self._dot.set_color(color)
        self._label.setText(msg)
        self._paint(color)
        self._timer.start()

    def _reset(self):
        self._dot.set_color(PALETTE["green"])
        self._label.setText(self.IDLE_TEXT)
        self._paint(PALETTE["text_muted"])

    def _paint(self, color: str):
        self._label.setStyleSheet(f"{_MONO} font-size: 11px; color: {color};")

    def paintEvent(self, _event):
        p = QPainter(self)
        p.setPen(Qt.NoPen)
        p.setBrush(QBrush(QColor(PALETTE["bg_card"])))
        p.drawRect(self.rect())
        p.setPen(QPen(QColor(PALETTE["border"]), 1))
        p.drawLine(0, 0, self.width(), 0)
        p.end()
        super().paintEvent(_event)


# ──────────────────────────────────────────────
# MainWindow
# ──────────────────────────────────────────────
class MainWindow(QtWidgets.QMainWindow):
    """
    Read-mostly view over the coordinator. Every button maps to exactly one
    coordinator action; every panel is redrawn from coordinator signals or
    from the store on the refresh timer.
    """

    def __init__(self, coordinator: IncidentCoordinator, store: Store, cfg: AppConfig):
        super().__init__()
        self.coordinator = coordinator
        self.store = store
        self.cfg = cfg

        self.setWindowTitle("IncidentDesk")
        self.resize(1400, 860)
        self.setMinimumSize(1100, 700)

        self._build_ui()
        self._apply_global_style()
        self._connect()

        self._refresh_timer = QTimer(self)
        self._refresh_timer.setInterval(1000)
        self._refresh_timer.timeout.connect(self._refresh)
        self._refresh_timer.start()
        self._refresh()
        self._refresh_audit()

    # ═══════════════════════════════════════════
    # Layout
    # ═══════════════════════════════════════════
    def _build_ui(self):
        root = QtWidgets.QWidget()
        self.setCentralWidget(root)
        vroot = QtWidgets.QVBoxLayout(root)
        vroot.setContentsMargins(0, 0, 0, 0)
        vroot.setSpacing(0)

        self.topbar = TopBar(self.cfg.instance_id)
        vroot.addWidget(self.topbar)

        body = QtWidgets.QWidget()
        body_lay = QtWidgets.QVBoxLayout(body)
        body_lay.setContentsMargins(18, 16, 18, 8)
        body_lay.setSpacing(14)
        vroot.addWidget(body, 1)

        cards = QtWidgets.QHBoxLayout()
        cards.setSpacing(14)
        c = self.cfg
        self.card_cpu = MetricCard("CPU", color=PALETTE["accent_cyan"], threshold=c.zombie_cpu_max_pct)
        self.card_ram = MetricCard("Memory", color=PALETTE["accent_blue"], threshold=c.zombie_ram_min_pct)
        self.card_threads = MetricCard("Threads", unit="", color=PALETTE["accent_purple"], ceiling=None)
        self.card_io = MetricCard("IO wait", color=PALETTE["yellow"], ceiling=20.0)
        for card in (self.card_cpu, self.card_ram, self.card_threads, self.card_io):
            cards.addWidget(card, 1)
        body_lay.addLayout(cards)

        mid = QtWidgets.QHBoxLayout()
        mid.setSpacing(14)
        mid.addWidget(self._card_wrap("⟳  Incident", self._build_incident_panel()), 2)
        mid.addWidget(self._card_wrap("⚑  Controls", self._build_controls()), 1)
        body_lay.addLayout(mid)

        self.tabs = QtWidgets.QTabWidget()
        body_lay.addWidget(self.tabs, 1)
        self._build_log_tab()
        self._build_analysis_tab()
        self._build_audit_tab()
        self._build_timeline_tab()

        self.status_bar = FlashBar()
        vroot.addWidget(self.status_bar)

    def _build_incident_panel(self) -> QtWidgets.QWidget:
        w = QtWidgets.QWidget()
        grid = QtWidgets.QGridLayout(w)
        grid.setContentsMargins(14, 10, 14, 10)
        grid.setHorizontalSpacing(18)
        grid.setVerticalSpacing(8)

        self.status_pill = StatusPill()
        self.phase_badge = PhaseBadge()
        self.countdown = QtWidgets.QLabel(fmt_countdown(None))
        self.countdown.setStyleSheet(f"{_MONO} font-size: 30px; font-weight: 800; "
                                     f"color: {PALETTE['text_primary']};")
        self.lbl_incident = self._value_label()
        self.lbl_source = self._value_label()
        self.lbl_queue = self._value_label()
        self.lbl_ticks = self._value_label()
        self.lbl_stall = self._value_label()
        self.lbl_remote = self._value_label()
        self.lbl_shift_count = self._value_label()

        grid.addWidget(self.status_pill, 0, 0, 1, 2)
        grid.addWidget(self.phase_badge, 0, 2)
        grid.addWidget(self.countdown, 0, 3, 2, 1, Qt.AlignRight)
        rows = [
            ("INCIDENT", self.lbl_incident), ("SOURCE", self.lbl_source),
            ("QUEUE", self.lbl_queue), ("BAD TICKS", self.lbl_ticks),
            ("STALL", self.lbl_stall), ("REMOTE", self.lbl_remote),
            ("SHIFT RESETS", self.lbl_shift_count),
        ]
        for i, (title, lbl) in enumerate(rows):
            r, col = 1 + i // 2, (i % 2) * 2
            cap = QtWidgets.QLabel(title)
            cap.setStyleSheet(f"{_MONO} font-size: 10px; color: {PALETTE['text_muted']}; letter-spacing: 1px;")
            grid.addWidget(cap, r, col)
            grid.addWidget(lbl, r, col + 1)
        return w

    def _build_controls(self) -> QtWidgets.QWidget:
        w = QtWidgets.QWidget()
        lay = QtWidgets.QVBoxLayout(w)
        lay.setContentsMargins(14, 10, 14, 10)
        lay.setSpacing(8)

        self.btn_commit = self._make_button("⏻  Commit remediation", PALETTE["red"])
        self.btn_cancel = self._make_button("✕  Cancel incident", PALETTE["text_muted"])
        self.btn_zombie = self._make_button("☣  Zombie strike", PALETTE["orange"])
        self.btn_red_team = self._make_button("⚔  Red team drill", PALETTE["yellow"])
        self.btn_resync = self._make_button("⇄  Resync uplink", PALETTE["accent_purple"])
        self.btn_export = self._make_button("⤓  Export audit CSV", PALETTE["accent_cyan"])

        row1 = QtWidgets.QHBoxLayout()
        row1.addWidget(self.btn_commit)
        row1.addWidget(self.btn_cancel)
        row2 = QtWidgets.QHBoxLayout()
        row2.addWidget(self.btn_zombie)
        row2.addWidget(self.btn_red_team)
        row3 = QtWidgets.QHBoxLayout()
        row3.addWidget(self.btn_resync)
        row3.addWidget(self.btn_export)
        for row in (row1, row2, row3):
            lay.addLayout(row)
        lay.addStretch(1)
        return w

    def _build_log_tab(self):
        self.log_view = QtWidgets.QPlainTextEdit()
        self.log_view.setReadOnly(True)
        self.log_view.setMaximumBlockCount(self.cfg.log_lines_max * 10)
        self.tabs.addTab(self.log_view, "  Operator Log")

    def _build_analysis_tab(self):
        w = QtWidgets.QWidget()
        lay = QtWidgets.QVBoxLayout(w)
        lay.setContentsMargins(0, 0, 0, 0)
        self.lbl_analysis = QtWidgets.QLabel("No analysis yet.")
        self.lbl_analysis.setWordWrap(True)
        self.lbl_analysis.setStyleSheet(f"{_MONO} font-size: 12px; padding: 10px;")
        lay.addWidget(self.lbl_analysis)
        self.tbl_interventions = self._make_table(["Confidence", "Protocol", "Action", "Command"])
        lay.addWidget(self.tbl_interventions, 1)
        self.tabs.addTab(w, "  Analysis")

    def _build_audit_tab(self):
        w = QtWidgets.QWidget()
        lay = QtWidgets.QVBoxLayout(w)
        lay.setContentsMargins(0, 0, 0, 0)
        self.lbl_summary = QtWidgets.QLabel("")
        self.lbl_summary.setStyleSheet(f"{_MONO} font-size: 11px; color: {PALETTE['accent_cyan']}; padding: 6px;")
        lay.addWidget(self.lbl_summary)
        self.tbl_audit = self._make_table(
            ["Resolved", "Incident", "Trigger", "Remediation", "Type", "Outcome", "TTR", "Shift", "Load"]
        )
        lay.addWidget(self.tbl_audit, 1)
        self.tabs.addTab(w, "  Audit")

    def _build_timeline_tab(self):
        self.tbl_timeline = self._make_table(["Time", "Kind", "Summary"])
        self.tbl_timeline.setColumnWidth(1, 90)
        self.tabs.addTab(self.tbl_timeline, "  Timeline")

    # ═══════════════════════════════════════════
    # Wiring
    # ═══════════════════════════════════════════
    def _connect(self):
        co = self.coordinator
        co.phase_changed.connect(self.on_phase)
        co.status_changed.connect(self.status_pill.set_text)
        co.queue_changed.connect(lambda depth: self.lbl_queue.setText(str(depth)))
        co.incident_changed.connect(self.on_incident)
        co.classification_ready.connect(self.on_classification)
        co.alerts_sent.connect(self.on_alerts)
        co.remediation_finished.connect(lambda _o: self._refresh_audit())
        co.command_failed.connect(lambda msg: self.status_bar.flash(msg, PALETTE["red"]))
        co.log_line.connect(self.append_log)
        co.stall_changed.connect(lambda s: self.lbl_stall.setText("STALLED" if s else "—"))

        self.btn_commit.clicked.connect(self._commit)
        self.btn_cancel.clicked.connect(self._cancel)
        self.btn_zombie.clicked.connect(lambda: self._strike(SourceTag.DASHBOARD_MANUAL))
        self.btn_red_team.clicked.connect(lambda: self._strike(SourceTag.RED_TEAM))
        self.btn_resync.clicked.connect(self._resync)
        self.btn_export.clicked.connect(self._export)

    @QtCore.Slot(object)
    def update_sample(self, s: TelemetrySample):
        c = self.cfg
        self.card_cpu.push(s.cpu, s.mode, alarm=s.cpu < c.zombie_cpu_max_pct)
        self.card_ram.push(s.ram, "", alarm=s.ram > c.zombie_ram_min_pct)
        self.card_threads.push(s.threads)
        self.card_io.push(s.io_wait)

    @QtCore.Slot(str)
    def append_log(self, line: str):
        stamp = time.strftime("%H:%M:%S")
        self.log_view.appendPlainText(f"{stamp}  {line}")

    @QtCore.Slot(str)
    def on_phase(self, phase: str):
        self.phase_badge.set_text(phase)
        color = PHASE_COLORS.get(phase, PALETTE["text_primary"])
        self.countdown.setStyleSheet(f"{_MONO} font-size: 30px; font-weight: 800; color: {color};")
        executing = phase == RemediationPhase.EXECUTING.value
        self.btn_commit.setEnabled(not executing)
        self.btn_cancel.setEnabled(not executing)

    @QtCore.Slot(object)
    def on_incident(self, st: IncidentState):
        self.lbl_incident.setText(st.incident_id or "—")
        self.lbl_source.setText(st.source)
        self.lbl_ticks.setText(str(st.consecutive_bad_ticks))
        self.lbl_remote.setText("ACTIVE" if self.coordinator.remote_active else "—")

    @QtCore.Slot(object)
    def on_classification(self, c: Classification):
        origin = "LOCAL HEURISTICS" if c.fallback else "AI CLASSIFIER"
        color = STATUS_COLORS.get(c.status, PALETTE["text_primary"])
        self.lbl_analysis.setText(
            f"<b style='color:{color}'>{c.status}</b> · stage {c.stage} · "
            f"confidence {c.confidence}% · {origin}<br/>{c.analysis}"
        )
        t = self.tbl_interventions
        t.setRowCount(len(c.interventions))
        for r, iv in enumerate(c.interventions):
            _set_cell(t, r, 0, iv.confidence,
                      PALETTE["green"] if iv.confidence == "HIGH" else PALETTE["text_muted"])
            _set_cell(t, r, 1, iv.protocol)
            _set_cell(t, r, 2, iv.action)
            _set_cell(t, r, 3, iv.cli_command)

    @QtCore.Slot(list)
    def on_alerts(self, results: List[ChannelResult]):
        parts = [f"{r.channel}:{'SIM' if r.simulated else r.status}" for r in results if r.success]
        if parts:
            self.status_bar.flash("Alert dispatched  " + "  ".join(parts), PALETTE["accent_purple"])
        else:
            self.status_bar.flash("Alert broadcast failed on every channel", PALETTE["orange"])

    # ═══════════════════════════════════════════
    # Periodic refresh
    # ═══════════════════════════════════════════
    def _refresh(self):
        co = self.coordinator
        self.topbar.refresh(co.shift, alarm=co.global_active)
        self.countdown.setText(fmt_countdown(co.remaining_seconds()))
        self.lbl_queue.setText(str(co.queue_depth))
        self.lbl_shift_count.setText(str(co.shift_remediation_count()))

        tl = self.store.list_timeline(limit=200)
        tt = self.tbl_timeline
        tt.setRowCount(len(tl))
        for r, (ts, kind, summary, _details) in enumerate(tl):
            _set_cell(tt, r, 0, time.strftime("%H:%M:%S", time.localtime(ts)))
            tt.setCellWidget(r, 1, KindBadge(kind))
            _set_cell(tt, r, 2, summary)

    def _refresh_audit(self):
        records = self.store.list_audit(limit=200)
        t = self.tbl_audit
        t.setRowCount(len(records))
        outcome_colors = {"REMEDIATED": PALETTE["green"], "FAILED": PALETTE["red"],
                          "REJECTED_COOLDOWN": PALETTE["yellow"]}
        for r, rec in enumerate(records):
            _set_cell(t, r, 0, time.strftime("%m-%d %H:%M:%S", time.localtime(rec.resolved_at)))
            _set_cell(t, r, 1, rec.incident_id)
            _set_cell(t, r, 2, rec.trigger_source)
            _set_cell(t, r, 3, rec.remediation_source)
            _set_cell(t, r, 4, rec.remediation_type)
            _set_cell(t, r, 5, rec.outcome, outcome_colors.get(rec.outcome, ""))
            _set_cell(t, r, 6, f"{rec.recovery_seconds}s")
            _set_cell(t, r, 7, str(rec.shift_id))
            _set_cell(t, r, 8, str(rec.cognitive_load))

        s = self.store.audit_summary(since=time.time() - 24 * 3600)
        self.lbl_summary.setText(
            f"24H  fractures {s['total_fractures']}  ·  avg TTR {s['avg_ttr']:.1f}s  ·  "
            f"human {s['human_count']}  ·  sentinel {s['agent_count']}  ·  "
            f"efficiency {s['efficiency_ratio']}  ·  failed {s['failed']}"
        )

    # ═══════════════════════════════════════════
    # Actions
    # ═══════════════════════════════════════════
    def _commit(self):
        if self.coordinator.commit_remediation(SourceTag.DASHBOARD_CONSOLE):
            self.status_bar.flash("Remediation committed", PALETTE["red"])
        else:
            self.status_bar.flash("Remediation already in flight", PALETTE["orange"])

    def _cancel(self):
        if self.coordinator.cancel_incident():
            self.status_bar.flash("Incident cancelled", PALETTE["text_muted"])

    def _strike(self, source: SourceTag):
        result = self.coordinator.trigger_incident(source)
        if result.dispatched:
            self.status_bar.flash(f"Strike dispatched ({source.value})", PALETTE["orange"])
        else:
            self.status_bar.flash(f"Agent busy, strike queued (depth {result.depth})", PALETTE["yellow"])

    def _resync(self):
        if not self.coordinator.resync_uplink():
            self.status_bar.flash("Handshake already in progress", PALETTE["yellow"])

    def _export(self):
        path, _ = QtWidgets.QFileDialog.getSaveFileName(
            self, "Export audit log", "incidentdesk_audit.csv", "CSV (*.csv)")
        if not path:
            return
        n = self.store.export_audit_csv(path)
        self.status_bar.flash(f"Exported {n} audit row(s) to {path}", PALETTE["green"])

    # ═══════════════════════════════════════════
    # Widget factories
    # ═══════════════════════════════════════════
    def _value_label(self) -> QtWidgets.QLabel:
        lbl = QtWidgets.QLabel("—")
        lbl.setStyleSheet(f"{_MONO} font-size: 12px; color: {PALETTE['text_primary']};")
        return lbl

    def _make_table(self, headers: List[str]) -> QtWidgets.QTableWidget:
        t = QtWidgets.QTableWidget(0, len(headers))
        t.setHorizontalHeaderLabels(headers)
        t.setEditTriggers(QtWidgets.QAbstractItemView.NoEditTriggers)
        t.setSelectionBehavior(QtWidgets.QAbstractItemView.SelectRows)
        t.setSelectionMode(QtWidgets.QAbstractItemView.SingleSelection)
        t.setAlternatingRowColors(True)
        t.setShowGrid(False)
        t.setFrameShape(QtWidgets.QFrame.NoFrame)
        t.verticalHeader().setVisible(False)
        t.horizontalHeader().setSectionResizeMode(QtWidgets.QHeaderView.ResizeToContents)
        t.horizontalHeader().setStretchLastSection(True)
        return t

    def _card_wrap(self, title: str, widget: QtWidgets.QWidget) -> QtWidgets.QWidget:
        card = QtWidgets.QFrame()
        card.setObjectName("card")
        card.setStyleSheet(f"""
            QFrame#card {{
                background: {PALETTE['bg_card']};
                border: 1px solid {PALETTE['border']};
                border-radius: 12px;
            }}
        """)
        lay = QtWidgets.QVBoxLayout(card)
        lay.setContentsMargins(0, 8, 0, 0)
        lay.setSpacing(0)
        lbl = QtWidgets.QLabel(title)
        lbl.setStyleSheet(f"{_MONO} font-size: 11px; font-weight: 600; padding-left: 14px; "
                          f"color: {PALETTE['accent_cyan']}; letter-spacing: 1px;")
        lay.addWidget(lbl)
        lay.addWidget(widget, 1)
        return card

    def _make_button(self, text: str, accent: str) -> QtWidgets.QPushButton:
        btn = QtWidgets.QPushButton(text)
        btn.setStyleSheet(f"""
            QPushButton {{
                background: {accent}18; color: {accent};
                border: 1px solid {accent}60;
                padding: 8px 14px; border-radius: 8px;
                {_MONO} font-size: 12px; font-weight: 600;
            }}
            QPushButton:hover  {{ background: {accent}30; border-color: {accent}; }}
            QPushButton:pressed {{ background: {accent}45; }}
            QPushButton:disabled {{ color: {PALETTE['text_muted']}; border-color: {PALETTE['border']}; }}
        """)
        return btn

    def _apply_global_style(self):
        self.setStyleSheet(f"""
            QMainWindow, QWidget {{ background: {PALETTE['bg_deep']}; color: {PALETTE['text_primary']}; }}
            QTabWidget::pane {{ border: none; background: transparent; }}
            QTabBar::tab {{
                background: transparent; color: {PALETTE['text_muted']};
                padding: 8px 18px; {_MONO}
                font-size: 12px; font-weight: 600; border-radius: 6px;
            }}
            QTabBar::tab:selected {{
                background: {PALETTE['bg_card']}; color: {PALETTE['accent_cyan']};
                border: 1px solid {PALETTE['border']};
            }}
            QTableWidget {{
                background: {PALETTE['bg_card']}; alternate-background-color: #12171e;
                {_MONO} font-size: 11px; border: none;
            }}
            QHeaderView::section {{
                background: {PALETTE['bg_card']}; color: {PALETTE['text_muted']};
                border: none; border-bottom: 1px solid {PALETTE['border']};
                padding: 6px; font-size: 10px; font-weight: 700;
            }}
            QPlainTextEdit {{
                background: {PALETTE['bg_card']}; color: {PALETTE['green']};
                {_MONO} font-size: 11px; border: none; padding: 8px;
            }}
        """)
