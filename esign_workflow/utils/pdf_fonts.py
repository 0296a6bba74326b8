"""Unicode font support for ReportLab contract rendering.

Contract bodies and signer names routinely carry accented characters, which the
ReportLab base-14 fonts cannot encode. Resolution order for each style:

1. Fonts bundled in ``esign_workflow/fonts/`` (optional)
2. DejaVu / Liberation serif fonts from common Linux locations
3. Windows Times New Roman

If nothing is found the built-in Times family is used.
"""

import logging
from pathlib import Path

from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont

logger = logging.getLogger(__name__)

_BUNDLED_FONTS_DIR = Path(__file__).resolve().parent.parent / "fonts"

_FONT_CANDIDATES = {
    "ContractSerif": [
        _BUNDLED_FONTS_DIR / "DejaVuSerif.ttf",
        Path("/usr/share/fonts/truetype/dejavu/DejaVuSerif.ttf"),
        Path("/usr/share/fonts/dejavu-serif/DejaVuSerif.ttf"),
        Path("/usr/share/fonts/truetype/liberation/LiberationSerif-Regular.ttf"),
        Path("C:/Windows/Fonts/times.ttf"),
    ],
    "ContractSerif-Bold": [
        _BUNDLED_FONTS_DIR / "DejaVuSerif-Bold.ttf",
        Path("/usr/share/fonts/truetype/dejavu/DejaVuSerif-Bold.ttf"),
        Path("/usr/share/fonts/dejavu-serif/DejaVuSerif-Bold.ttf"),
        Path("/usr/share/fonts/truetype/liberation/LiberationSerif-Bold.ttf"),
        Path("C:/Windows/Fonts/timesbd.ttf"),
    ],
}

_BUILTIN = {"normal": "Times-Roman", "bold": "Times-Bold"}

_registered = {"normal": None, "bold": None}
_attempted = False


def register_contract_fonts() -> bool:
    """Register TrueType fonts once per process. Returns True if a TTF was found."""
    global _attempted

    if _attempted:
        return _registered["normal"] is not None
    _attempted = True

    for name, candidates in _FONT_CANDIDATES.items():
        role = "bold" if name.endswith("Bold") else "normal"
        for path in candidates:
            if not path.exists():
                continue
            try:
                pdfmetrics.registerFont(TTFont(name, str(path)))
                _registered[role] = name
                break
            except Exception as e:
                logger.warning(f"Could not register font {name} from {path}: {e}")

    normal = _registered["normal"]
    if normal:
        bold = _registered["bold"] or normal
        pdfmetrics.registerFontFamily(
            normal, normal=normal, bold=bold, italic=normal, boldItalic=bold,
        )
        return True

    logger.info("No TrueType serif font found, falling back to built-in Times")
    return False


def get_font_name(bold: bool = False) -> str:
    """Name of the registered font for the requested weight."""
    register_contract_fonts()
    if _registered["normal"] is None:
        return _BUILTIN["bold"] if bold else _BUILTIN["normal"]
    if bold:
        return _registered["bold"] or _registered["normal"]
    return _registered["normal"]
