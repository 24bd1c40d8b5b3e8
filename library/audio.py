"""
Audio file helpers: content type normalisation and duration probing.
"""

import logging
from typing import BinaryIO, Optional

from mutagen import File as MutagenFile
from mutagen import MutagenError

from shared.constants import AUDIO_CONTENT_TYPES

logger = logging.getLogger(__name__)


def normalize_content_type(content_type: Optional[str]) -> str:
    """'Audio/MPEG; charset=x' -> 'audio/mpeg'."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def extension_for(content_type: str) -> str:
    return AUDIO_CONTENT_TYPES.get(content_type, "")


def probe_duration(fileobj: BinaryIO) -> Optional[float]:
    """
    Read the duration in seconds from an audio file object using mutagen.

    The file position is restored afterwards. Returns None when the format is
    not recognised or carries no length.
    """
    position = fileobj.tell()
    try:
        fileobj.seek(0)
        audio = MutagenFile(fileobj)
        if audio is None or not getattr(audio.info, 'length', None):
            return None
        return round(float(audio.info.length), 3)
    except (MutagenError, ValueError, EOFError) as e:
        logger.debug("Duration probe failed: %s", e)
        return None
    finally:
        fileobj.seek(position)
