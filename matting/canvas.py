"""
Drawing surfaces for the render loop.

Both canvases take HxWx3 uint8 RGB images and share the same small
interface: ``draw``, ``set_status``, ``poll``, ``closed`` and ``close``.

    WindowCanvas : an OpenCV window; click toggles play/pause, keys go to Controls
    WebCanvas    : a Flask page with an MJPEG stream and the control form
"""

import logging
import threading
import time
from typing import Callable, Mapping, Optional

import cv2
import numpy as np
from flask import Flask, Response, jsonify, render_template_string, request
from werkzeug.serving import make_server

from matting.controls import Controls

logger = logging.getLogger(__name__)


def draw_status(image: np.ndarray, lines, origin=(12, 28), scale=0.6):
    """Write ``lines`` top-left with a dark outline so they read on any background."""
    x, y = origin
    for line in lines:
        if not line:
            continue
        cv2.putText(image, line, (x, y), cv2.FONT_HERSHEY_SIMPLEX, scale, (0, 0, 0), 3, cv2.LINE_AA)
        cv2.putText(image, line, (x, y), cv2.FONT_HERSHEY_SIMPLEX, scale, (255, 255, 255), 1, cv2.LINE_AA)
        y += int(32 * scale / 0.6)
    return image


class WindowCanvas:
    """OpenCV window canvas."""

    def __init__(self, title: str = "RVM matting", on_click: Optional[Callable[[], None]] = None):
        self.title = title
        self.on_click = on_click
        self.status = ""
        self.overlay = ""
        self.closed = False
        cv2.namedWindow(self.title, cv2.WINDOW_AUTOSIZE)
        cv2.setMouseCallback(self.title, self._on_mouse)

    def _on_mouse(self, event, x, y, flags, param):
        if event == cv2.EVENT_LBUTTONDOWN and self.on_click is not None:
            self.on_click()

    def set_status(self, text: str):
        self.status = text

    def set_overlay(self, text: str):
        self.overlay = text

    def draw(self, image: np.ndarray):
        bgr = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
        draw_status(bgr, [self.overlay, self.status])
        cv2.imshow(self.title, bgr)

    def poll(self, delay_ms: int = 1) -> Optional[int]:
        key = cv2.waitKey(delay_ms) & 0xFF
        if cv2.getWindowProperty(self.title, cv2.WND_PROP_VISIBLE) < 1:
            self.closed = True
        return None if key == 0xFF else key

    def close(self):
        self.closed = True
        cv2.destroyWindow(self.title)


PAGE_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <title>Robust Video Matting</title>
    <style>
        body { margin: 0; padding: 20px; background: #1a1a1a; color: #fff; font-family: Arial, sans-serif; }
        .container { max-width: 1200px; margin: 0 auto; }
        .canvas { text-align: center; margin: 20px 0; background: #000; padding: 10px; border-radius: 8px; }
        .canvas img { max-width: 100%; height: auto; cursor: pointer; }
        .controls { display: flex; flex-wrap: wrap; gap: 16px; align-items: center; }
        .status { background: #2a2a2a; padding: 10px; border-radius: 5px; margin-top: 10px; }
        label { color: #888; font-size: 14px; }
    </style>
</head>
<body>
    <div class="container">
        <h1>Robust Video Matting</h1>
        <form id="controls" class="controls">
            <label>Mode
                <select name="mode">
                {% for m in choices.mode %}<option value="{{ m }}" {% if m == config.mode %}selected{% endif %}>{{ m }}</option>{% endfor %}
                </select>
            </label>
            <label>State
                <select name="state_index">
                {% for i in choices.state_index %}<option value="{{ i }}" {% if i == config.state_index %}selected{% endif %}>r{{ i }}</option>{% endfor %}
                </select>
            </label>
            <label>Downsample ratio
                <input name="ratio" type="number" min="0.05" max="1" step="0.05" value="{{ config.ratio }}">
            </label>
            <label>Background
                <select name="background">
                {% for b in choices.background %}<option value="{{ b }}" {% if b == config.background %}selected{% endif %}>{{ b }}</option>{% endfor %}
                </select>
            </label>
            <label>Composite
                <select name="composite">
                {% for c in choices.composite %}<option value="{{ c }}" {% if c == config.composite %}selected{% endif %}>{{ c }}</option>{% endfor %}
                </select>
            </label>
        </form>
        <div class="canvas">
            <img id="canvas" src="/stream" alt="Matting output" onclick="fetch('/toggle', {method: 'POST'})">
        </div>
        <div class="status" id="status"></div>
    </div>
    <script>
        document.getElementById('controls').addEventListener('change', function () {
            fetch('/config', {method: 'POST', body: new FormData(this)})
                .then(r => r.json())
                .then(data => { if (data.error) document.getElementById('status').textContent = data.error; });
        });
        setInterval(function () {
            fetch('/info')
                .then(r => r.json())
                .then(data => {
                    const state = data.paused ? 'paused' : 'playing';
                    document.getElementById('status').textContent =
                        `${state} | FPS ${data.fps.toFixed(1)} | ${data.status || ''}`;
                })
                .catch(err => console.log('Info update failed:', err));
        }, 500);
    </script>
</body>
</html>
"""


class WebCanvas:
    """Serve the rendered frames and the control form over HTTP."""

    def __init__(self, controls: Controls, on_toggle: Optional[Callable[[], None]] = None,
                 info: Optional[Callable[[], dict]] = None,
                 host: str = "127.0.0.1", port: int = 8080, jpeg_quality: int = 85):
        self.controls = controls
        self.on_toggle = on_toggle
        self.info = info
        self.host = host
        self.port = port
        self.jpeg_quality = jpeg_quality
        self.status = ""
        self.overlay = ""
        self.closed = False
        self._latest: Optional[bytes] = None
        self._lock = threading.Lock()
        self._server = None
        self._thread = None
        self.app = self.create_app()

    def create_app(self) -> Flask:
        app = Flask(__name__)

        @app.route("/")
        def index():
            return render_template_string(
                PAGE_TEMPLATE, config=self.controls.as_dict(), choices=Controls.choices(),
            )

        @app.route("/stream")
        def stream():
            return Response(self._frames(), mimetype="multipart/x-mixed-replace; boundary=frame")

        @app.route("/frame.jpg")
        def frame():
            with self._lock:
                data = self._latest
            if data is None:
                return jsonify({"error": "No frame available"}), 404
            return Response(data, mimetype="image/jpeg", headers={"Cache-Control": "no-cache"})

        @app.route("/info")
        def info():
            payload = {"fps": 0.0, "paused": False}
            if self.info is not None:
                payload.update(self.info())
            payload["status"] = self.status
            payload["config"] = self.controls.as_dict()
            return jsonify(payload)

        @app.route("/config", methods=["POST"])
        def config():
            body = request.form if request.form else request.get_json(silent=True)
            if body is None:
                body = {}
            if not isinstance(body, Mapping):
                return jsonify({"error": "Expected a form or a JSON object"}), 400
            try:
                self.controls.update(body)
            except ValueError as e:
                return jsonify({"error": str(e)}), 400
            return jsonify(self.controls.as_dict())

        @app.route("/toggle", methods=["POST"])
        def toggle():
            if self.on_toggle is not None:
                self.on_toggle()
            return jsonify({"success": True})

        return app

    def _frames(self):
        while not self.closed:
            with self._lock:
                data = self._latest
            if data is not None:
                yield b"--frame\r\nContent-Type: image/jpeg\r\n\r\n" + data + b"\r\n"
            time.sleep(0.033)

    def start(self):
        self._server = make_server(self.host, self.port, self.app, threaded=True)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info("Web canvas at http://%s:%d", self.host, self.port)

    def set_status(self, text: str):
        self.status = text

    def set_overlay(self, text: str):
        self.overlay = text

    def draw(self, image: np.ndarray):
        bgr = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
        draw_status(bgr, [self.overlay])
        ok, buffer = cv2.imencode(".jpg", bgr, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            logger.warning("JPEG encode failed for %s frame", bgr.shape)
            return
        with self._lock:
            self._latest = buffer.tobytes()

    def poll(self, delay_ms: int = 1) -> Optional[int]:
        time.sleep(delay_ms / 1000)
        return None

    def close(self):
        self.closed = True
        if self._server is not None:
            self._server.shutdown()
            self._server = None
