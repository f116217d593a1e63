from dataclasses import dataclass, field
import json


@dataclass
class RecognitionResult:
    text: str = ""
    tokens: list[str] = field(default_factory=list)
    start_time: float = 0.0
    timestamps: list[float] = field(default_factory=list)
    segment: int = 0
    is_final: bool = False
    token_ids: list[int] = field(default_factory=list)

    def __post_init__(self):
        if len(self.tokens) != len(self.timestamps):
            raise ValueError(
                f"tokens ({len(self.tokens)}) and timestamps "
                f"({len(self.timestamps)}) differ in length"
            )

    def timestamps_text(self) -> str:
        return "[" + ", ".join(f"{t:.2f}" for t in self.timestamps) + "]"

    def as_dict(self) -> dict:
        return {
            "text": self.text,
            "tokens": list(self.tokens),
            "start_time": float(self.start_time),
            # Kept as a pre-rendered string for compatibility with existing clients.
            "timestamps": self.timestamps_text(),
            "segment": self.segment,
            "is_final": self.is_final,
        }

    def as_json_string(self) -> str:
        return json.dumps(self.as_dict(), ensure_ascii=False, separators=(",", ":"))
