"""
Finalizer - packages the produced files into the downloadable artifact.

- One file: moved to ``<artifact_root>/<job_id>.<ext>``
- Several files: zipped into ``<artifact_root>/<job_id>.zip`` with entries
  ``1.<ext>``, ``2.<ext>``, ... in production order
- With a passphrase: the artifact is then encrypted in place

On failure ``cleanup`` removes the work directory and any final artifact.
"""
import logging
import shutil
import zipfile
from pathlib import Path
from typing import List, Optional, Tuple

from dataexport.export.crypto import encrypt_file
from dataexport.export.sinks import ZIP_FORMAT, ExportFormat

logger = logging.getLogger(__name__)


class ExportFinalizer:
    def __init__(self, artifact_root: Path, job_id: str):
        self.artifact_root = Path(artifact_root)
        self.job_id = job_id
        self.work_dir = self.artifact_root / job_id
        self.final_path: Optional[Path] = None

    def prepare(self) -> None:
        """Create the artifact root; raises OSError when it cannot be used."""
        self.artifact_root.mkdir(parents=True, exist_ok=True)

    def package(self, files: List[Path], export_format: ExportFormat) -> Tuple[Path, ExportFormat]:
        """Turn the sink output into a single artifact; returns its path and format."""
        if len(files) == 1:
            self.final_path = self.artifact_root / f"{self.job_id}.{export_format.extension}"
            shutil.move(str(files[0]), self.final_path)
            return self.final_path, export_format

        self.final_path = self.artifact_root / f"{self.job_id}.{ZIP_FORMAT.extension}"
        self._create_zip(files, self.final_path, export_format.extension)
        logger.info(f"Archived {len(files)} file(s) into {self.final_path.name}")
        return self.final_path, ZIP_FORMAT

    def encrypt(self, passphrase: str) -> Path:
        if self.final_path is None:
            raise RuntimeError("Nothing to encrypt before package() ran")
        encrypt_file(self.final_path, passphrase)
        logger.info(f"Encrypted {self.final_path.name}")
        return self.final_path

    def discard_work_dir(self) -> None:
        shutil.rmtree(self.work_dir, ignore_errors=True)

    def cleanup(self) -> None:
        """Remove everything this job wrote to disk."""
        self.discard_work_dir()
        candidates = [self.final_path] if self.final_path else []
        if self.artifact_root.is_dir():
            candidates.extend(self.artifact_root.glob(f"{self.job_id}.*"))
        for path in candidates:
            if path.exists():
                path.unlink()

    def _create_zip(self, files: List[Path], zip_path: Path, extension: str) -> None:
        with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for index, path in enumerate(files, start=1):
                zf.write(path, arcname=f"{index}.{extension}")
