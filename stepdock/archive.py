"""
Archive builder for file injection.

The runtime's copy-to-container API accepts a tar stream that is extracted
relative to a destination directory. Each file mount is packaged as a
single-entry tarball extracted at the container root, so the entry name is
the mount path without its leading slash.

Header fields that would vary between builds (mtime, owner names) are pinned
so identical payloads produce byte-identical archives.
"""

import io
import tarfile

from stepdock.schemas import File, FileMount


def create_tarfile(file: File, mount: FileMount) -> bytes:
    """
    Package a file payload as a tar archive.

    Args:
        file: The payload to inject
        mount: Destination path and mode

    Returns:
        The tar archive bytes
    """
    info = tarfile.TarInfo(name=mount.path.lstrip("/"))
    info.size = len(file.data)
    info.mode = mount.mode
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    info.type = tarfile.REGTYPE

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        tar.addfile(info, io.BytesIO(file.data))
    return buf.getvalue()
