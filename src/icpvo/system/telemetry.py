class Telemetry:
    def __init__(self):
        self.frames = []
        self.summary = {}

    def log_frame(self, idx: int, rec: dict):
        rec["frame_idx"] = idx
        self.frames.append(rec)

    def to_dict(self) -> dict:
        return {"summary": self.summary, "frames": self.frames}
