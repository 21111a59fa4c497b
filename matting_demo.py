#!/usr/bin/env python3
"""
Robust Video Matting live demo

Runs a pretrained RVM graph against a webcam or a video file and renders the
foreground, alpha or recurrent-state output to an OpenCV window or a web page.

Usage:
    python3 matting_demo.py                          # front camera, OpenCV window
    python3 matting_demo.py --source clip.mp4 --mode alpha
    python3 matting_demo.py --display web --port 8080 --background green
    python3 matting_demo.py --model resnet50 --ratio 0.25 --fp16

Window keys: 1-4 mode, [ ] ratio, r state, b background, c composite,
space / click play-pause, q quit.
"""

import argparse
import logging
import sys

from matting import compose, postprocess
from matting.canvas import WebCanvas, WindowCanvas
from matting.controls import Controls, RenderOptions
from matting.render import RenderLoop
from matting.rvm import DEFAULT_MODEL, ModelLoadError, SegmentationConfig, load, resolve_device
from matting.timing import TimingStats
from matting.webcam import Webcam, WebcamConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("matting_demo")


def parse_source(value: str):
    """Camera index if numeric, otherwise a video file path."""
    return int(value) if value.isdigit() else value


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Robust Video Matting live demo")
    p.add_argument("--source", type=parse_source, default=None,
                   help="Camera index or video file (default: camera picked by --camera-mode)")
    p.add_argument("--camera-mode", choices=["front", "back"], default="front")
    p.add_argument("--crop", action="store_true", help="Crop and scale frames to --width x --height")
    p.add_argument("--width", type=int, default=640)
    p.add_argument("--height", type=int, default=480)
    p.add_argument("--fps", type=int, default=0, help="Requested camera FPS (0 = driver default)")
    p.add_argument("--model", default=DEFAULT_MODEL,
                   help="TorchScript file, release artifact path or hub variant (mobilenetv3 / resnet50)")
    p.add_argument("--device", default="auto", help="cuda / cpu / auto")
    p.add_argument("--fp16", action="store_true", help="Use FP16 on CUDA")
    p.add_argument("--ratio", type=float, default=0.5, help="RVM downsample ratio")
    p.add_argument("--mode", choices=postprocess.MODES, default="default")
    p.add_argument("--state-index", type=int, choices=[1, 2, 3, 4], default=1,
                   help="Recurrent state shown in --mode state")
    p.add_argument("--background", choices=list(compose.BACKGROUNDS), default="none")
    p.add_argument("--composite", choices=compose.OPERATIONS, default="source-over")
    p.add_argument("--display", choices=["window", "web"], default="window")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8080)
    p.add_argument("--max-frames", type=int, default=None)
    p.add_argument("--debug", action="store_true",
                   help="DEBUG logging (per-frame) and per-frame tensor leak check")
    return p.parse_args(argv)


def build_canvas(args, webcam: Webcam, controls: Controls, loop_info):
    if args.display == "web":
        canvas = WebCanvas(controls, on_toggle=webcam.toggle, info=loop_info,
                           host=args.host, port=args.port)
        canvas.start()
        return canvas
    return WindowCanvas(on_click=webcam.toggle)


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.debug:
        logging.getLogger("matting").setLevel(logging.DEBUG)
        logger.info("DEBUG logging enabled (per-frame logs)")

    try:
        config = SegmentationConfig(model_path=args.model, ratio=args.ratio,
                                    mode=args.mode, state_index=args.state_index)
    except ValueError as e:
        logger.error("%s", e)
        return 2
    controls = Controls(config, RenderOptions(background=args.background, composite=args.composite))

    try:
        session = load(config, resolve_device(args.device), fp16=args.fp16)
    except ModelLoadError:
        logger.exception("Could not load the matting model")
        return 1

    webcam = Webcam(WebcamConfig(debug=args.debug, mode=args.camera_mode, crop=args.crop,
                                 width=args.width, height=args.height, fps=args.fps))
    if not webcam.start(args.source):
        logger.error("No video source available, exiting")
        return 1

    loop = None
    canvas = build_canvas(args, webcam, controls, lambda: loop.info() if loop else {})
    loop = RenderLoop(webcam, session, controls, canvas,
                      timing=TimingStats(max_samples=60), check_leaks=args.debug)
    try:
        loop.run(max_frames=args.max_frames)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        webcam.stop()
        canvas.close()
    return 1 if loop.error else 0


if __name__ == "__main__":
    sys.exit(main())
