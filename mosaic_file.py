"""Mosaics every detected face in an image or video file, without the web UI."""
import argparse
import sys
import time
from pathlib import Path

import cv2

from facemosaic.core.config import settings
from facemosaic.services.compositor import MosaicCompositor
from facemosaic.services.face_detector import DetectorLoadError, FaceDetector
from facemosaic.services.face_tracker import FaceTracker
from facemosaic.services.pixelation import PixelationStrategy, create_pixelator
from facemosaic.services.session_service import IMAGE_EXTENSIONS


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("input")
    parser.add_argument("output")
    parser.add_argument("--min-score", type=float, default=settings.detector.min_detection_score)
    parser.add_argument("--show", action="store_true", help="Preview frames while processing")
    return parser.parse_args()


def mosaic_image(detector: FaceDetector, src: str, dst: str) -> int:
    image = cv2.imread(src)
    if image is None:
        print(f"Failed to read image: {src}", file=sys.stderr)
        return 2

    detections = detector.detect(image)
    faces = FaceTracker().track([d.box for d in detections], [])
    output = MosaicCompositor().render(
        image,
        faces,
        create_pixelator(PixelationStrategy.BLOCK_SAMPLE),
        elliptical=settings.mosaic.image_soft_edge,
    )
    cv2.imwrite(dst, output)
    print(f"{len(faces)} face(s) mosaicked -> {dst}")
    return 0


def mosaic_video(detector: FaceDetector, src: str, dst: str, show: bool) -> int:
    cap = cv2.VideoCapture(src)
    if not cap.isOpened():
        print(f"Failed to open video: {src}", file=sys.stderr)
        return 2

    fps = cap.get(cv2.CAP_PROP_FPS) or settings.pipeline.default_fps
    width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
    height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
    writer = cv2.VideoWriter(dst, cv2.VideoWriter_fourcc(*"mp4v"), fps, (width, height))

    tracker = FaceTracker()
    compositor = MosaicCompositor()
    pixelator = create_pixelator(PixelationStrategy.SHRINK_EXPAND)
    faces = []
    frame_count = 0
    started = time.time()
    window_name = "Face Mosaic"

    try:
        while True:
            ok, frame = cap.read()
            if not ok or frame is None:
                break

            try:
                detections = detector.detect(frame)
                faces = tracker.track([d.box for d in detections], faces)
            except Exception as e:
                # keep last known faces covered rather than writing the frame bare
                print(f"Detection failed on frame {frame_count}: {e}", file=sys.stderr)

            output = compositor.render(frame, faces, pixelator, elliptical=True)
            writer.write(output)
            frame_count += 1

            if show:
                cv2.imshow(window_name, output)
                if cv2.waitKey(1) & 0xFF in (27, ord("q")):
                    break
    finally:
        cap.release()
        writer.release()
        if show:
            cv2.destroyAllWindows()

    elapsed = time.time() - started
    print(f"{frame_count} frames in {elapsed:.1f}s -> {dst}")
    return 0


def main() -> int:
    args = parse_args()
    settings.detector.min_detection_score = args.min_score

    detector = FaceDetector()
    try:
        detector.initialize()
    except DetectorLoadError as e:
        print(f"Failed to load face detector: {e}", file=sys.stderr)
        return 1

    if Path(args.input).suffix.lower() in IMAGE_EXTENSIONS:
        return mosaic_image(detector, args.input, args.output)
    return mosaic_video(detector, args.input, args.output, args.show)


if __name__ == "__main__":
    raise SystemExit(main())
