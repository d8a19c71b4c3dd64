import logging
import shutil
from pathlib import Path
from typing import List
import aiofiles
import aiofiles.os

logger = logging.getLogger("chunk_store")

class ChunkStore:
    """
    Persists raw chunks of in-flight uploads under a scratch directory.
    Each session gets its own folder; chunks are stored as ``chunk_<index>``.
    """

    def __init__(self, temp_dir: Path):
        self.temp_dir = temp_dir

    def session_folder(self, session_id: str) -> Path:
        return self.temp_dir / session_id

    def chunk_path(self, folder: Path, chunk_index: int) -> Path:
        return folder / f"chunk_{chunk_index}"

    def create_session_folder(self, session_id: str) -> Path:
        """
        Create the exclusive scratch folder for a session.
        """
        folder = self.session_folder(session_id)
        # exist_ok=False: session ids are unique, a collision is a bug
        folder.mkdir(parents=True, exist_ok=False)
        return folder

    async def write_chunk(self, folder: Path, chunk_index: int, data: bytes) -> int:
        """
        Write a chunk, replacing any previous copy of the same index.

        The data lands in a temporary file first and is renamed into place,
        so a crashed write never leaves a truncated ``chunk_<index>`` behind.
        """
        final_path = self.chunk_path(folder, chunk_index)
        partial_path = folder / f"chunk_{chunk_index}.part"
        async with aiofiles.open(partial_path, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(partial_path, final_path)
        return len(data)

    def chunk_paths(self, folder: Path, total_chunks: int) -> List[Path]:
        """
        Paths of every chunk in index order; raises FileNotFoundError on a gap.
        """
        paths = []
        for index in range(total_chunks):
            path = self.chunk_path(folder, index)
            if not path.is_file():
                raise FileNotFoundError(f"Chunk {index} missing in {folder}")
            paths.append(path)
        return paths

    def remove_session_folder(self, folder: Path) -> None:
        if folder.exists():
            logger.info(f"Removing chunk folder: {folder}")
            shutil.rmtree(folder, ignore_errors=True)
