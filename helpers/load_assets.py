from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional


@dataclass(frozen=True)
class AssetPair:
    wav: Path
    txt: Optional[Path] = None

    @property
    def phrase(self) -> Optional[str]:
        """The spoken phrase (ground truth), None if the recording has none."""
        if self.txt is None:
            return None
        return self.txt.read_text(encoding="utf-8").strip()


def iter_assets(assets_dir: Path) -> Iterator[AssetPair]:
    """
    Iterate over *.wav files in assets_dir (recursively), sorted by path,
    pairing each with the same-name .txt file when there is one.
    """
    assets_dir = assets_dir.resolve()
    if not assets_dir.is_dir():
        raise FileNotFoundError(f"Assets directory doesn't exist: {assets_dir}")

    for wav in sorted(assets_dir.rglob("*.wav")):
        if not wav.is_file():
            continue
        txt = wav.with_suffix(".txt")
        yield AssetPair(wav=wav, txt=txt if txt.is_file() else None)
