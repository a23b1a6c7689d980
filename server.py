import io
import atexit
import asyncio
import threading
from concurrent.futures import Future
from typing import Any, Callable, Coroutine, Optional

from flask import Flask, Response, jsonify, request, send_file

from config import DOWNLOAD_NAME, HOST, PORT
from errors import BatchInProgressError, DecodeError, NotFoundError
from generators import ImageGenerator, get_image_generator
from imaging import ImageBuffer, decode
from orchestrator import Orchestrator
from preview import WebtoonPreview
from storyboard import Panel, Session

ALLOWED_UPLOADS = {".png": "image/png", ".jpg": "image/jpeg",
                   ".jpeg": "image/jpeg", ".webp": "image/webp"}


class AppState:
    """
    One webtoon session plus the event loop that runs its generation work.

    The loop lives in a daemon thread; request handlers hand it work and
    every session mutation happens on that loop.
    """

    def __init__(self, generator: Optional[ImageGenerator] = None,
                 session: Optional[Session] = None):
        self.session = session or Session()
        self.preview = WebtoonPreview(self.session)
        self._generator = generator
        self._orchestrator: Optional[Orchestrator] = None
        self.last_job: Optional[Future] = None
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.thread.start()

    @property
    def orchestrator(self) -> Orchestrator:
        # Built on first use so the server starts without provider credentials
        if self._orchestrator is None:
            generator = self._generator or get_image_generator()
            self._orchestrator = Orchestrator(self.session, generator, self.preview)
        return self._orchestrator

    def submit(self, coro: Coroutine) -> Future:
        """Run a coroutine on the session loop without waiting for it."""
        job = asyncio.run_coroutine_threadsafe(coro, self.loop)
        job.add_done_callback(_report_failure)
        self.last_job = job
        return job

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a plain function on the session loop and return its result."""
        async def run():
            return fn(*args, **kwargs)
        return asyncio.run_coroutine_threadsafe(run(), self.loop).result()

    def close(self) -> None:
        """Stop the session loop and its thread. Safe to call twice."""
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=1)
        if not self.thread.is_alive():
            self.loop.close()


def _report_failure(job: Future) -> None:
    if not job.cancelled() and job.exception() is not None:
        print(f"[ERROR] Background job failed: {job.exception()}")


def panel_json(panel: Panel) -> dict:
    return {
        "index": panel.index,
        "prompt": panel.prompt,
        "pending": panel.pending,
        "failure": panel.failure,
        "status": panel.status,
        "hasImage": panel.image is not None,
        "mimeType": panel.image.mime_type if panel.image else None,
    }


def session_json(state: AppState) -> dict:
    session = state.session
    return {
        "generating": session.generating,
        "panels": [panel_json(p) for p in session.panels],
        "config": {
            "styleDescription": session.config.style_description,
            "referenceCount": len(session.config.reference_images),
        },
        "compositeReady": state.preview.available,
        "stitching": state.preview.stitching,
    }


def create_app(generator: Optional[ImageGenerator] = None,
               session: Optional[Session] = None) -> Flask:
    app = Flask(__name__, static_folder=None)
    state = AppState(generator, session)
    app.extensions["webtoon"] = state
    atexit.register(state.close)

    @app.errorhandler(NotFoundError)
    def not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(BatchInProgressError)
    def busy(e):
        return jsonify({"error": str(e)}), 409

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "service": "nanotoon"})

    @app.route("/api/session")
    def api_session():
        return jsonify(session_json(state))

    @app.route("/api/panels/<int:panel_id>/prompt", methods=["PUT", "POST"])
    def api_prompt(panel_id: int):
        data = request.get_json(force=True) or {}
        prompt = data.get("prompt")
        if not isinstance(prompt, str):
            return jsonify({"error": "prompt must be a string"}), 400
        panel = state.call(state.session.edit_prompt, panel_id, prompt)
        return jsonify(panel_json(panel))

    @app.route("/api/panels/<int:panel_id>/image")
    def api_panel_image(panel_id: int):
        panel = state.session.store.get(panel_id)
        if panel.image is None:
            return jsonify({"image": None}), 404
        return send_file(io.BytesIO(panel.image.data), mimetype=panel.image.mime_type,
                         download_name=f"panel-{panel_id:03d}.{panel.image.extension}")

    @app.route("/api/panels/<int:panel_id>/retry", methods=["POST"])
    def api_retry(panel_id: int):
        state.session.store.get(panel_id)
        state.submit(state.orchestrator.retry(panel_id))
        return jsonify({"panel": panel_id, "status": "queued"}), 202

    @app.route("/api/generate", methods=["POST"])
    def api_generate():
        # Raises BatchInProgressError (409) if a batch already holds the session
        config = state.call(state.orchestrator.begin_batch)
        state.submit(state.orchestrator.run_batch(config))
        return jsonify({"status": "queued", "panels": len(state.session.store)}), 202

    @app.route("/api/reset", methods=["POST"])
    def api_reset():
        data = request.get_json(silent=True) or {}
        if data.get("confirm") is not True:
            return jsonify({"error": "Reset discards every panel; send confirm=true"}), 400
        state.call(state.orchestrator.reset)
        return jsonify(session_json(state))

    @app.route("/api/style", methods=["PUT", "POST"])
    def api_style():
        data = request.get_json(force=True) or {}
        style = data.get("styleDescription")
        if not isinstance(style, str):
            return jsonify({"error": "styleDescription must be a string"}), 400
        state.call(state.session.set_style, style)
        return jsonify({"styleDescription": style})

    @app.route("/api/references", methods=["POST"])
    def api_add_references():
        files = request.files.getlist("file")
        if not files:
            return jsonify({"error": "No file provided"}), 400

        buffers = []
        for file in files:
            name = (file.filename or "").lower()
            ext = name[name.rfind("."):] if "." in name else ""
            if ext not in ALLOWED_UPLOADS:
                return jsonify({"error": "Only PNG, JPEG and WebP files are allowed"}), 400
            buffer = ImageBuffer(mime_type=ALLOWED_UPLOADS[ext], data=file.read())
            try:
                decode(buffer)
            except DecodeError as e:
                return jsonify({"error": f"Failed to process image: {e}"}), 400
            buffers.append(buffer)

        state.call(state.session.add_reference_images, buffers)
        return jsonify({"referenceCount": len(state.session.config.reference_images)})

    @app.route("/api/references/<int:position>", methods=["DELETE"])
    def api_remove_reference(position: int):
        state.call(state.session.remove_reference_image, position)
        return jsonify({"referenceCount": len(state.session.config.reference_images)})

    @app.route("/api/composite")
    def api_composite() -> Response:
        composite = state.preview.composite
        if composite is None:
            return jsonify({"composite": None}), 404
        download = request.args.get("download") == "1"
        return send_file(io.BytesIO(composite.data), mimetype=composite.mime_type,
                         as_attachment=download, download_name=DOWNLOAD_NAME)

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host=HOST, port=PORT, debug=False, threaded=True)
