import logging
import queue
import time
from pathlib import Path
from typing import Dict, List, Optional

from PySide6 import QtCore, QtGui, QtWidgets

from config.constants import (
    APP_TITLE,
    FPS_OPTIONS,
    MAX_STATIC_DURATION,
    MIN_STATIC_DURATION,
    NAME_TOKENS,
    OUT_FORMATS,
    QUALITY_OPTIONS,
    SETTINGS_STORE,
)
from config.paths import find_ffmpeg, find_ffprobe
from core.models import (
    BatchDoneEvent,
    BatchSettings,
    Job,
    JobOptions,
    JobStatus,
    LogEvent,
    ProgressEvent,
    QualityPreset,
    TerminalEvent,
)
from core.presets import load_batch_settings, save_batch_settings
from services.ffmpeg_service import FfmpegService, parse_hex_color
from services.scheduler import BatchScheduler
from utils.files import media_type
from utils.formatting import parse_int

logger = logging.getLogger(__name__)

SPACE_1 = 8
SPACE_2 = 16
SPACE_3 = 24

ACCENT = "#3B82F6"
ACCENT_HOVER = "#2563EB"
BG = "#0B1220"
PANEL = "#0F172A"
BORDER = "#1E293B"
TEXT = "#E2E8F0"
MUTED = "#94A3B8"
INPUT_BG = "#0B1324"
HOVER_BG = "#1E293B"
DISABLED_BG = "#1F2937"
DISABLED_TEXT = "#64748B"
OK_COLOR = "#22C55E"
ERROR_COLOR = "#EF4444"

COL_FILE, COL_STATUS, COL_PROGRESS, COL_OPTIONS, COL_OUTPUT = range(5)
TABLE_HEADERS = ["File", "Status", "Progress", "Quality / FPS", "Output"]

STATUS_TEXT = {
    JobStatus.QUEUED: "Queued",
    JobStatus.RUNNING: "Converting",
    JobStatus.SUCCEEDED: "Done",
    JobStatus.FAILED: "Failed",
}


def _set_button_variant(button: QtWidgets.QPushButton, variant: str) -> None:
    button.setProperty("variant", variant)
    button.setCursor(QtCore.Qt.PointingHandCursor)


def _button(text: str, variant: str, slot) -> QtWidgets.QPushButton:
    button = QtWidgets.QPushButton(text)
    _set_button_variant(button, variant)
    button.clicked.connect(slot)
    return button


class Card(QtWidgets.QFrame):
    def __init__(self, title: str = ""):
        super().__init__()
        self.setProperty("card", True)
        layout = QtWidgets.QVBoxLayout(self)
        layout.setContentsMargins(SPACE_3, SPACE_2, SPACE_3, SPACE_2)
        layout.setSpacing(SPACE_1)
        if title:
            label = QtWidgets.QLabel(title)
            label.setProperty("cardTitle", True)
            layout.addWidget(label)
        self.body = QtWidgets.QVBoxLayout()
        self.body.setSpacing(SPACE_1)
        layout.addLayout(self.body)


def _form_layout() -> QtWidgets.QFormLayout:
    form = QtWidgets.QFormLayout()
    form.setHorizontalSpacing(SPACE_2)
    form.setVerticalSpacing(SPACE_1)
    form.setLabelAlignment(QtCore.Qt.AlignLeft)
    return form


def _fps_from_text(text: str) -> Optional[int]:
    return parse_int(text) if text != FPS_OPTIONS[0] else None


def _fps_to_text(fps: Optional[int]) -> str:
    return str(fps) if fps else FPS_OPTIONS[0]


class WebpConverterApp(QtWidgets.QMainWindow):
    def __init__(self, settings_store: Path = SETTINGS_STORE, log_file: Optional[Path] = None) -> None:
        super().__init__()
        self.setWindowTitle(APP_TITLE)
        self.resize(1100, 780)
        self.setMinimumSize(820, 620)

        self.settings_store = settings_store
        self.log_file = log_file
        self.event_queue: "queue.Queue[object]" = queue.Queue()
        ffmpeg_path = find_ffmpeg()
        self.ffmpeg_service = FfmpegService(ffmpeg_path, find_ffprobe(ffmpeg_path))
        self.scheduler = BatchScheduler(
            self.ffmpeg_service,
            self.event_queue,
            settings=load_batch_settings(self.settings_store),
        )
        self._rows: Dict[str, int] = {}
        self._progress_bars: Dict[str, QtWidgets.QProgressBar] = {}

        self._build_ui()
        self._apply_styles()
        self._apply_settings(self.scheduler.settings)
        self._refresh_ffmpeg(initial=True)

        self.timer = QtCore.QTimer(self)
        self.timer.setInterval(120)
        self.timer.timeout.connect(self._poll_events)
        self.timer.start()

    def _apply_styles(self) -> None:
        QtWidgets.QApplication.setStyle("Fusion")
        qss = """
        QMainWindow {{ background: {BG}; }}
        QLabel {{ color: {TEXT}; }}
        QLabel[role="title"] {{ font-size: 18px; font-weight: 600; }}
        QLabel[role="subtitle"] {{ color: {MUTED}; }}
        QLabel[cardTitle="true"] {{ font-size: 14px; font-weight: 600; }}
        QFrame[card="true"] {{
            background: {PANEL};
            border: 1px solid {BORDER};
            border-radius: 14px;
        }}
        QLineEdit, QComboBox, QDoubleSpinBox {{
            min-height: 30px;
            padding: 4px 10px;
            border-radius: 8px;
            border: 1px solid {BORDER};
            background: {INPUT_BG};
            color: {TEXT};
        }}
        QLineEdit:focus, QComboBox:focus, QDoubleSpinBox:focus {{ border: 1px solid {ACCENT}; }}
        QTableWidget, QPlainTextEdit {{
            background: {INPUT_BG};
            border: 1px solid {BORDER};
            border-radius: 10px;
            color: {TEXT};
            gridline-color: {BORDER};
        }}
        QTableWidget::item:selected {{ background: {HOVER_BG}; }}
        QHeaderView::section {{
            background: {PANEL};
            color: {MUTED};
            border: none;
            padding: 6px;
        }}
        QPushButton {{ border-radius: 10px; padding: 7px 14px; font-weight: 500; }}
        QPushButton[variant="primary"] {{ background: {ACCENT}; color: #FFFFFF; border: none; }}
        QPushButton[variant="primary"]:hover {{ background: {ACCENT_HOVER}; }}
        QPushButton[variant="secondary"] {{ background: {PANEL}; color: {TEXT}; border: 1px solid {BORDER}; }}
        QPushButton[variant="secondary"]:hover {{ background: {HOVER_BG}; }}
        QPushButton[variant="ghost"] {{ background: transparent; color: {ACCENT}; border: none; }}
        QPushButton[variant="ghost"]:hover {{ background: {HOVER_BG}; }}
        QPushButton:disabled {{ background: {DISABLED_BG}; color: {DISABLED_TEXT}; border: none; }}
        QProgressBar {{
            border: 1px solid {BORDER};
            border-radius: 6px;
            text-align: center;
            background: {INPUT_BG};
            color: {TEXT};
        }}
        QProgressBar::chunk {{ background: {ACCENT}; border-radius: 6px; }}
        """
        self.setStyleSheet(
            qss.format(
                BG=BG,
                TEXT=TEXT,
                MUTED=MUTED,
                PANEL=PANEL,
                BORDER=BORDER,
                INPUT_BG=INPUT_BG,
                ACCENT=ACCENT,
                ACCENT_HOVER=ACCENT_HOVER,
                HOVER_BG=HOVER_BG,
                DISABLED_BG=DISABLED_BG,
                DISABLED_TEXT=DISABLED_TEXT,
            )
        )

    # ---------- layout ----------
    def _build_ui(self) -> None:
        central = QtWidgets.QWidget()
        root = QtWidgets.QVBoxLayout(central)
        root.setContentsMargins(SPACE_3, SPACE_3, SPACE_3, SPACE_3)
        root.setSpacing(SPACE_2)
        self.setCentralWidget(central)

        root.addWidget(self._build_header())

        splitter = QtWidgets.QSplitter(QtCore.Qt.Horizontal)
        splitter.setChildrenCollapsible(False)
        splitter.addWidget(self._build_queue_card())
        splitter.addWidget(self._build_settings_card())
        splitter.setStretchFactor(0, 3)
        splitter.setStretchFactor(1, 1)

        vertical = QtWidgets.QSplitter(QtCore.Qt.Vertical)
        vertical.setChildrenCollapsible(False)
        vertical.addWidget(splitter)
        log_card = Card("Log")
        self.log_text = QtWidgets.QPlainTextEdit()
        self.log_text.setReadOnly(True)
        log_card.body.addWidget(self.log_text)
        vertical.addWidget(log_card)
        vertical.setStretchFactor(0, 3)
        vertical.setStretchFactor(1, 1)
        root.addWidget(vertical, 1)

        status_card = Card()
        status_row = QtWidgets.QHBoxLayout()
        self.status_label = QtWidgets.QLabel("Ready")
        self.total_progress = QtWidgets.QProgressBar()
        self.total_progress.setRange(0, 100)
        self.total_text = QtWidgets.QLabel("0 / 0")
        self.start_btn = _button("Start all", "primary", self.start_all)
        self.stop_btn = _button("Stop", "secondary", self.stop)
        self.stop_btn.setEnabled(False)
        status_row.addWidget(self.status_label, 0)
        status_row.addWidget(self.total_progress, 1)
        status_row.addWidget(self.total_text, 0)
        status_row.addWidget(self.start_btn)
        status_row.addWidget(self.stop_btn)
        status_card.body.addLayout(status_row)
        root.addWidget(status_card)

    def _build_header(self) -> QtWidgets.QWidget:
        card = Card()
        title = QtWidgets.QLabel(APP_TITLE)
        title.setProperty("role", "title")
        subtitle = QtWidgets.QLabel("Batch-convert animated and still WebP images to H.264 video.")
        subtitle.setProperty("role", "subtitle")
        card.body.addWidget(title)
        card.body.addWidget(subtitle)

        row = QtWidgets.QHBoxLayout()
        self.ffmpeg_path_input = QtWidgets.QLineEdit(self.ffmpeg_service.ffmpeg_path or "")
        row.addWidget(QtWidgets.QLabel("FFmpeg:"))
        row.addWidget(self.ffmpeg_path_input, 1)
        row.addWidget(_button("Browse", "secondary", self.pick_ffmpeg))
        row.addWidget(_button("Check", "ghost", lambda: self._refresh_ffmpeg()))
        if self.log_file is not None:
            row.addWidget(_button("App log", "ghost", self.open_app_log))
        card.body.addLayout(row)
        return card

    def _build_queue_card(self) -> QtWidgets.QWidget:
        card = Card("Queue")
        self.table = QtWidgets.QTableWidget(0, len(TABLE_HEADERS))
        self.table.setHorizontalHeaderLabels(TABLE_HEADERS)
        self.table.setSelectionBehavior(QtWidgets.QAbstractItemView.SelectRows)
        self.table.setSelectionMode(QtWidgets.QAbstractItemView.ExtendedSelection)
        self.table.setEditTriggers(QtWidgets.QAbstractItemView.NoEditTriggers)
        self.table.verticalHeader().setVisible(False)
        header = self.table.horizontalHeader()
        header.setSectionResizeMode(COL_FILE, QtWidgets.QHeaderView.Stretch)
        header.setSectionResizeMode(COL_OUTPUT, QtWidgets.QHeaderView.Stretch)
        self.table.itemSelectionChanged.connect(self._sync_selection)
        card.body.addWidget(self.table, 1)

        actions = QtWidgets.QGridLayout()
        actions.setHorizontalSpacing(SPACE_1)
        actions.addWidget(_button("Add files", "secondary", self.add_files), 0, 0)
        actions.addWidget(_button("Add folder", "secondary", self.add_folder), 0, 1)
        actions.addWidget(_button("Retry selected", "secondary", self.retry_selected), 0, 2)
        actions.addWidget(_button("Cancel selected", "ghost", self.cancel_selected), 1, 0)
        actions.addWidget(_button("Remove selected", "ghost", self.remove_selected), 1, 1)
        actions.addWidget(_button("Clear completed", "ghost", self.clear_completed), 1, 2)
        self.open_log_btn = _button("Open failure log", "ghost", self.open_failure_log)
        self.open_log_btn.setEnabled(False)
        actions.addWidget(self.open_log_btn, 2, 0)
        actions.addWidget(_button("Open output folder", "ghost", self.open_output_folder), 2, 1)
        card.body.addLayout(actions)
        return card

    def _build_settings_card(self) -> QtWidgets.QWidget:
        card = Card("Settings")
        form = _form_layout()

        out_row = QtWidgets.QHBoxLayout()
        self.output_dir_input = QtWidgets.QLineEdit()
        self.output_dir_input.setPlaceholderText("Next to each source file")
        out_row.addWidget(self.output_dir_input, 1)
        out_row.addWidget(_button("…", "secondary", self.pick_output))
        form.addRow("Output folder:", out_row)

        self.format_combo = QtWidgets.QComboBox()
        self.format_combo.addItems([fmt.upper() for fmt in OUT_FORMATS])
        form.addRow("Format:", self.format_combo)

        self.template_input = QtWidgets.QLineEdit()
        self.template_input.setToolTip("Tokens: " + " ".join("{" + t + "}" for t in NAME_TOKENS))
        form.addRow("File name:", self.template_input)

        self.quality_combo = QtWidgets.QComboBox()
        self.quality_combo.addItems(QUALITY_OPTIONS)
        form.addRow("Quality:", self.quality_combo)

        self.fps_combo = QtWidgets.QComboBox()
        self.fps_combo.addItems(FPS_OPTIONS)
        form.addRow("Frame rate:", self.fps_combo)

        self.static_duration_spin = QtWidgets.QDoubleSpinBox()
        self.static_duration_spin.setRange(MIN_STATIC_DURATION, MAX_STATIC_DURATION)
        self.static_duration_spin.setSingleStep(0.5)
        self.static_duration_spin.setSuffix(" s")
        form.addRow("Still image length:", self.static_duration_spin)

        bg_row = QtWidgets.QHBoxLayout()
        self.background_input = QtWidgets.QLineEdit()
        self.background_input.setPlaceholderText("#RRGGBB (optional)")
        bg_row.addWidget(self.background_input, 1)
        bg_row.addWidget(_button("Pick", "secondary", self.pick_background))
        form.addRow("Background:", bg_row)

        card.body.addLayout(form)
        self.apply_options_btn = _button("Apply quality / FPS to selected", "ghost", self.apply_options_to_selected)
        card.body.addWidget(self.apply_options_btn)
        card.body.addStretch(1)
        return card

    # ---------- settings ----------
    def _apply_settings(self, settings: BatchSettings) -> None:
        self.output_dir_input.setText(str(settings.output_dir) if settings.output_dir else "")
        self.format_combo.setCurrentText(settings.output_format.upper())
        self.template_input.setText(settings.name_template)
        self.quality_combo.setCurrentText(settings.default_quality.value.capitalize())
        self.fps_combo.setCurrentText(_fps_to_text(settings.default_fps))
        self.static_duration_spin.setValue(settings.static_duration)
        self.background_input.setText(settings.background or "")

    def _selected_options(self) -> JobOptions:
        return JobOptions(
            quality=QualityPreset.parse(self.quality_combo.currentText()),
            fps=_fps_from_text(self.fps_combo.currentText()),
        )

    def _collect_settings(self) -> BatchSettings:
        output_dir = self.output_dir_input.text().strip()
        options = self._selected_options()
        return BatchSettings(
            output_dir=Path(output_dir).expanduser() if output_dir else None,
            output_format=self.format_combo.currentText().strip().lower(),
            name_template=self.template_input.text().strip() or "{name}",
            default_quality=options.quality,
            default_fps=options.fps,
            static_duration=float(self.static_duration_spin.value()),
            background=self.background_input.text().strip() or None,
            job_timeout=self.scheduler.settings.job_timeout,
        )

    def _commit_settings(self) -> Optional[BatchSettings]:
        settings = self._collect_settings()
        if settings.background and parse_hex_color(settings.background) is None:
            QtWidgets.QMessageBox.critical(self, "Background", "Background must be a #RRGGBB colour.")
            return None
        self.scheduler.update_batch_settings(settings)
        save_batch_settings(self.settings_store, settings)
        return settings

    def _refresh_ffmpeg(self, initial: bool = False) -> None:
        path = self.ffmpeg_path_input.text().strip()
        if path:
            self.ffmpeg_service.set_paths(path, find_ffprobe(path))
        if not self.ffmpeg_service.ffmpeg_path:
            self._append_log("ERROR", "FFmpeg not found. Set its path or add it to PATH.")
            return
        self.ffmpeg_service.encoder_caps = self.ffmpeg_service.detect_encoders()
        if not self.ffmpeg_service.has_h264():
            self._append_log("WARN", "This FFmpeg build has no libx264 encoder.")
        if initial or path:
            self._append_log("OK", f"FFmpeg: {self.ffmpeg_service.ffmpeg_path}")
        if not self.ffmpeg_service.ffprobe_path:
            self._append_log("WARN", "FFprobe not found. Only WebP inputs can be probed.")

    # ---------- queue actions ----------
    def pick_ffmpeg(self) -> None:
        path, _ = QtWidgets.QFileDialog.getOpenFileName(self, "Locate ffmpeg", "", "All Files (*)")
        if path:
            self.ffmpeg_path_input.setText(path)
            self._refresh_ffmpeg()

    def pick_output(self) -> None:
        folder = QtWidgets.QFileDialog.getExistingDirectory(self, "Output folder", self.output_dir_input.text())
        if folder:
            self.output_dir_input.setText(folder)

    def pick_background(self) -> None:
        color = QtWidgets.QColorDialog.getColor(parent=self)
        if color.isValid():
            self.background_input.setText(color.name().upper())

    def add_files(self) -> None:
        filt = "WebP Images (*.webp);;Images (*.webp *.gif *.png *.apng *.jpg *.jpeg);;All Files (*)"
        files, _ = QtWidgets.QFileDialog.getOpenFileNames(self, "Add files", "", filt)
        self._add_paths([Path(p) for p in files])

    def add_folder(self) -> None:
        folder = QtWidgets.QFileDialog.getExistingDirectory(self, "Add folder")
        if folder:
            self._add_paths(sorted(p for p in Path(folder).rglob("*") if p.is_file()))

    def _add_paths(self, paths: List[Path]) -> None:
        accepted = [p for p in paths if media_type(p)]
        if not accepted:
            if paths:
                self._append_log("WARN", "No supported files found.")
            return
        self.scheduler.update_batch_settings(self._collect_settings())
        added = self.scheduler.enqueue(accepted, self._selected_options())
        skipped = len(accepted) - len(added)
        if skipped:
            self._append_log("INFO", f"Skipped {skipped} file(s) already in the queue")
        self._refresh_table()

    def _selected_ids(self) -> List[str]:
        rows = {index.row() for index in self.table.selectionModel().selectedRows()}
        return [job_id for job_id, row in self._rows.items() if row in rows]

    def retry_selected(self) -> None:
        count = sum(1 for job_id in self._selected_ids() if self.scheduler.retry(job_id))
        if count:
            self._append_log("INFO", f"Re-queued {count} job(s)")
            self._refresh_table()

    def cancel_selected(self) -> None:
        for job_id in self._selected_ids():
            self.scheduler.cancel(job_id)

    def remove_selected(self) -> None:
        removed = sum(1 for job_id in self._selected_ids() if self.scheduler.remove(job_id))
        if removed:
            self._append_log("INFO", f"Removed: {removed}")
            self._refresh_table()

    def clear_completed(self) -> None:
        cleared = self.scheduler.clear_completed()
        if cleared:
            self._append_log("INFO", f"Cleared {cleared} finished job(s)")
            self._refresh_table()

    def apply_options_to_selected(self) -> None:
        options = self._selected_options()
        updated = sum(1 for job_id in self._selected_ids() if self.scheduler.update_job_options(job_id, options))
        if updated:
            self._refresh_table()

    def _selected_job(self) -> Optional[Job]:
        ids = self._selected_ids()
        return self.scheduler.get(ids[0]) if len(ids) == 1 else None

    def _sync_selection(self) -> None:
        job = self._selected_job()
        self.open_log_btn.setEnabled(bool(job and job.failure and job.failure.log_path))

    def open_failure_log(self) -> None:
        job = self._selected_job()
        if job is None or job.failure is None or job.failure.log_path is None:
            return
        QtGui.QDesktopServices.openUrl(QtCore.QUrl.fromLocalFile(str(job.failure.log_path)))

    def open_app_log(self) -> None:
        if self.log_file is not None:
            QtGui.QDesktopServices.openUrl(QtCore.QUrl.fromLocalFile(str(self.log_file)))

    def open_output_folder(self) -> None:
        job = self._selected_job()
        if job is not None and job.output_path is not None:
            folder = job.output_path.parent
        else:
            folder = Path(self.output_dir_input.text().strip() or ".").expanduser()
        if not folder.exists():
            QtWidgets.QMessageBox.critical(self, "Folder", "The output folder does not exist.")
            return
        QtGui.QDesktopServices.openUrl(QtCore.QUrl.fromLocalFile(str(folder)))

    # ---------- batch ----------
    def start_all(self) -> None:
        if self.scheduler.is_running():
            return
        entry_path = self.ffmpeg_path_input.text().strip()
        if entry_path:
            self.ffmpeg_service.set_paths(entry_path, find_ffprobe(entry_path))
        if not self.ffmpeg_service.ffmpeg_path:
            QtWidgets.QMessageBox.critical(self, "FFmpeg", "FFmpeg not found. Set the path to ffmpeg.")
            return
        if not self.scheduler.jobs():
            QtWidgets.QMessageBox.information(self, "Queue is empty", "Add WebP files to convert.")
            return
        if self._commit_settings() is None:
            return
        if self.scheduler.start_all():
            self.start_btn.setEnabled(False)
            self.stop_btn.setEnabled(True)
            self.status_label.setText("Converting...")
        self._refresh_table()

    def stop(self) -> None:
        self.status_label.setText("Stopping after the running conversions...")
        self.scheduler.stop()

    def _finish(self, stopped: bool) -> None:
        self.start_btn.setEnabled(True)
        self.stop_btn.setEnabled(False)
        self.status_label.setText("Stopped." if stopped else "Done.")

    def closeEvent(self, event: QtGui.QCloseEvent) -> None:
        save_batch_settings(self.settings_store, self._collect_settings())
        if self.scheduler.is_running():
            self.scheduler.stop()
            for job in self.scheduler.jobs():
                if job.status is JobStatus.RUNNING:
                    self.scheduler.cancel(job.id)
        super().closeEvent(event)

    # ---------- table ----------
    def _refresh_table(self) -> None:
        jobs = self.scheduler.jobs()
        self.table.setRowCount(len(jobs))
        self._rows.clear()
        self._progress_bars.clear()
        for row, job in enumerate(jobs):
            self._rows[job.id] = row
            self.table.setItem(row, COL_FILE, QtWidgets.QTableWidgetItem(job.name))
            bar = QtWidgets.QProgressBar()
            bar.setRange(0, 100)
            self.table.setCellWidget(row, COL_PROGRESS, bar)
            self._progress_bars[job.id] = bar
            fps = _fps_to_text(job.options.fps)
            self.table.setItem(
                row, COL_OPTIONS, QtWidgets.QTableWidgetItem(f"{job.options.quality.value.capitalize()} / {fps}")
            )
            self._update_row(job)
        self._update_totals()

    def _update_row(self, job: Job) -> None:
        row = self._rows.get(job.id)
        if row is None:
            return
        status = QtWidgets.QTableWidgetItem(STATUS_TEXT[job.status])
        if job.status is JobStatus.SUCCEEDED:
            status.setForeground(QtGui.QColor(OK_COLOR))
        elif job.status is JobStatus.FAILED:
            status.setForeground(QtGui.QColor(ERROR_COLOR))
            if job.failure:
                status.setToolTip(job.failure.message)
        self.table.setItem(row, COL_STATUS, status)
        self._progress_bars[job.id].setValue(int(job.progress))
        output = str(job.output_path) if job.output_path else ""
        if job.failure:
            output = job.failure.message
        self.table.setItem(row, COL_OUTPUT, QtWidgets.QTableWidgetItem(output))

    def _update_totals(self) -> None:
        stats = self.scheduler.stats()
        finished = stats["succeeded"] + stats["failed"]
        total = stats["total"]
        self.total_progress.setValue(int(finished / total * 100) if total else 0)
        self.total_text.setText(f"{finished} / {total}")

    # ---------- events ----------
    def _append_log(self, level: str, msg: str) -> None:
        timestamp = time.strftime("%H:%M:%S")
        self.log_text.appendPlainText(f"[{timestamp}] {level}: {msg}")
        self.log_text.verticalScrollBar().setValue(self.log_text.verticalScrollBar().maximum())

    def _poll_events(self) -> None:
        try:
            while True:
                event = self.event_queue.get_nowait()
                if isinstance(event, LogEvent):
                    self._append_log(event.level, event.message)
                elif isinstance(event, ProgressEvent):
                    bar = self._progress_bars.get(event.job_id)
                    if bar is not None:
                        bar.setValue(int(event.progress))
                    self._mark_running(event.job_id)
                elif isinstance(event, TerminalEvent):
                    job = self.scheduler.get(event.job_id)
                    if job is not None:
                        self._update_row(job)
                    self._update_totals()
                    self._sync_selection()
                elif isinstance(event, BatchDoneEvent):
                    self._finish(event.stopped)
                    self._refresh_table()
        except queue.Empty:
            pass

    def _mark_running(self, job_id: str) -> None:
        row = self._rows.get(job_id)
        item = self.table.item(row, COL_STATUS) if row is not None else None
        if item is not None and item.text() == STATUS_TEXT[JobStatus.QUEUED]:
            item.setText(STATUS_TEXT[JobStatus.RUNNING])


def run_app(log_file: Optional[Path] = None) -> int:
    app = QtWidgets.QApplication.instance() or QtWidgets.QApplication([])
    window = WebpConverterApp(log_file=log_file)
    window.show()
    logger.info("Main window shown")
    return app.exec()


__all__ = ["WebpConverterApp", "run_app"]
