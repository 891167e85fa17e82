"""Downloads the face detection model pack via InsightFace's built-in downloader."""
import sys

DET_SIZE = (640, 640)


def download(pack: str = "buffalo_l", fallback: str = "buffalo_sc") -> int:
    from insightface.app import FaceAnalysis

    try:
        print(f"[INFO] Downloading {pack} (one-time)...")
        app = FaceAnalysis(name=pack, allowed_modules=["detection"], providers=["CPUExecutionProvider"])
        app.prepare(ctx_id=-1, det_size=DET_SIZE)
        print(f"[INFO] {pack} model downloaded successfully.")
        return 0
    except Exception as e:
        print(f"[WARN] {pack} unavailable ({e}), falling back to {fallback}...")

    try:
        app = FaceAnalysis(name=fallback, allowed_modules=["detection"], providers=["CPUExecutionProvider"])
        app.prepare(ctx_id=-1, det_size=DET_SIZE)
        print(f"[INFO] {fallback} model downloaded successfully.")
        return 0
    except Exception as e:
        print(f"[ERROR] Could not download a detection model: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(download(*sys.argv[1:3]))
