import ctypes as ct
import logging
import os
import re
from typing import Dict, List, Optional, Tuple

import pytest

import nsvg

logger = logging.getLogger(__name__)

_SVG_SIZE = re.compile(rb'<svg\b[^>]*?\bwidth="([0-9.]+)"[^>]*?\bheight="([0-9.]+)"')


def get_fixture(name: str) -> str:
    """Get a fixture by name."""
    return os.path.join(os.path.dirname(__file__), "fixtures", name)


class FakeNanoSVG:
    """Stand-in for the nanosvg shared library.

    Exposes the same five entry points with the same calling convention as
    the ctypes functions (addresses as integers, null as None). Parsed images
    are real ``NSVG.image`` structures, so the wrapper reads them exactly as it
    would read nanosvg's own. Every call is recorded so tests can check
    ownership: each created object must be deleted exactly once.
    """

    FILL = bytes((255, 0, 0, 255))

    def __init__(self) -> None:
        self.images: Dict[int, nsvg.NSVG.image] = {}
        self.rasterizers: Dict[int, ct.c_int] = {}
        self.parse_calls: List[Tuple[bytes, bytes, float]] = []
        self.rasterize_calls: List[tuple] = []
        self.deleted_documents: List[int] = []
        self.deleted_rasterizers: List[int] = []
        self.fail_create = False
        self.fail_rasterize = False

    def nsvgParse(self, text: int, units: bytes, dpi: float) -> Optional[int]:
        content = ct.string_at(text)
        self.parse_calls.append((content, units, dpi))
        match = _SVG_SIZE.search(content)
        if match is None:
            return None
        image = nsvg.NSVG.image(float(match.group(1)), float(match.group(2)))
        # Images are kept after deletion so addresses are never reused.
        address = ct.addressof(image)
        self.images[address] = image
        return address

    def nsvgDelete(self, image: int) -> None:
        self.deleted_documents.append(image)

    def nsvgCreateRasterizer(self) -> Optional[int]:
        if self.fail_create:
            return None
        rasterizer = ct.c_int()
        address = ct.addressof(rasterizer)
        self.rasterizers[address] = rasterizer
        return address

    def nsvgRasterize(
        self,
        rasterizer: int,
        image: int,
        tx: float,
        ty: float,
        scale: float,
        dst: int,
        width: int,
        height: int,
        stride: int,
    ) -> None:
        self.rasterize_calls.append(
            (rasterizer, image, tx, ty, scale, dst, width, height, stride)
        )
        if self.fail_rasterize:
            raise RuntimeError("simulated engine failure")
        ct.memmove(dst, self.FILL * (width * height), stride * height)

    def nsvgDeleteRasterizer(self, rasterizer: int) -> None:
        self.deleted_rasterizers.append(rasterizer)

    @property
    def live_documents(self) -> int:
        return len(self.images) - len(self.deleted_documents)

    @property
    def live_rasterizers(self) -> int:
        return len(self.rasterizers) - len(self.deleted_rasterizers)


@pytest.fixture
def fake_lib() -> FakeNanoSVG:
    return FakeNanoSVG()


@pytest.fixture
def engine(fake_lib: FakeNanoSVG) -> nsvg.Engine:
    return nsvg.Engine(fake_lib)


@pytest.fixture
def default_engine(engine: nsvg.Engine):
    """Install the fake engine as the global default for one test."""
    nsvg.set_default_engine(engine)
    yield engine
    nsvg.set_default_engine(None)


@pytest.fixture
def spiral_svg() -> str:
    with open(get_fixture("spiral.svg"), encoding="utf-8") as f:
        return f.read()


def make_svg(width: float, height: float) -> str:
    return (
        '<svg xmlns="http://www.w3.org/2000/svg" width="%s" height="%s">'
        '<rect width="%s" height="%s" fill="red"/></svg>' % (width, height, width, height)
    )
