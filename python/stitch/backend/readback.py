"""Ways of getting device buffer contents back to the host.

Some platforms cannot map a device buffer for reading. There the bytes are
pushed through image-shaped staging memory instead: 256x256 tiles with four
one-byte channels per pixel, filled with whole tiles first, then whole rows,
then a final partial row.
"""
import logging

import torch

from ..shape import ceildiv

logger = logging.getLogger(__name__)


class ReadbackStrategy:
    name = None

    def read_bytes(self, tensor: torch.Tensor) -> bytes:
        """ Host copy of a flat uint8 device tensor. """
        raise NotImplementedError()


class MappedReadback(ReadbackStrategy):
    """ Direct copy into host memory. """

    name = "mapped"

    def read_bytes(self, tensor):
        return tensor.detach().to("cpu").numpy().tobytes()


class StagedReadback(ReadbackStrategy):
    """ Copy through four-channel image tiles in host memory. """

    name = "staged"
    width = 256
    height = 256
    channels = 4

    def __init__(self):
        self._image = None

    def _staging(self):
        if self._image is None:
            self._image = torch.empty((self.height, self.width, self.channels), dtype=torch.uint8)
        return self._image

    def _copy_tile(self, src, width, height, pixel_offset):
        image = self._staging()
        start = pixel_offset * self.channels
        region = src[start:start + width * height * self.channels].view(height, width, self.channels)
        image[:height, :width].copy_(region)
        return image[:height, :width].numpy().tobytes()

    def read_bytes(self, tensor):
        count = tensor.numel()
        pixels = ceildiv(count, self.channels)
        # tiles copy whole pixels, so round up to a multiple of the channel count
        src = torch.zeros(pixels * self.channels, dtype=torch.uint8, device=tensor.device)
        src[:count] = tensor.detach()

        per_tile = self.width * self.height
        whole_tiles, remainder = divmod(pixels, per_tile)
        remainder_rows, remainder = divmod(remainder, self.width)

        chunks = []
        offset = 0
        for _ in range(whole_tiles):
            chunks.append(self._copy_tile(src, self.width, self.height, offset))
            offset += per_tile
        if remainder_rows > 0:
            chunks.append(self._copy_tile(src, self.width, remainder_rows, offset))
            offset += remainder_rows * self.width
        if remainder > 0:
            chunks.append(self._copy_tile(src, remainder, 1, offset))
        logger.debug("staged readback of %d bytes in %d tile copies", count, len(chunks))
        return b"".join(chunks)[:count]


READBACK_STRATEGIES = {
    "auto": MappedReadback,
    MappedReadback.name: MappedReadback,
    StagedReadback.name: StagedReadback,
}


def make_readback(name: str = "auto") -> ReadbackStrategy:
    try:
        return READBACK_STRATEGIES[name]()
    except KeyError:
        raise ValueError(
            f"unknown readback strategy {name!r}, expected one of {sorted(READBACK_STRATEGIES)}"
        ) from None
