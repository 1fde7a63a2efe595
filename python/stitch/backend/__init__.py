from .base import Backend, BufferHandle
from .cpu import CpuBackend
