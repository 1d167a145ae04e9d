"""jar-relocator.

Relocates ("shades") package prefixes inside a JAR: class file contents,
service descriptors, and the archive's own entry paths.
"""

from jar_relocator.errors import IOFailureError, MalformedInputError, RelocationError
from jar_relocator.relocation import Relocation, RelocatingRemapper
from jar_relocator.relocator import JarRelocator, relocate_archive

__all__: list[str] = [
    "IOFailureError",
    "JarRelocator",
    "MalformedInputError",
    "Relocation",
    "RelocatingRemapper",
    "RelocationError",
    "__version__",
    "relocate_archive",
]

__version__: str = "0.1.0"
