import json
import logging
from datetime import timezone
from pathlib import Path

import dateutil.parser

from src.models import Image


class ImagesStorage:
    """Directory of `<image id>.json` files describing built images.

    Each file holds at least `commit` and `created_at`; `tag` is optional.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def image_path(self, image: Image) -> Path:
        return self.path / f"{image.id}.json"

    def images(self) -> tuple[list[Image], list[str]]:
        images: list[Image] = []
        errors: list[str] = []
        if not self.path.is_dir():
            logging.warning(f"Images storage {self.path} does not exist")
            return images, errors

        for file in sorted(self.path.glob("*.json")):
            try:
                with open(file, "r") as f:
                    data = json.load(f)
                created_at = dateutil.parser.parse(data["created_at"])
                if created_at.tzinfo is None:
                    created_at = created_at.replace(tzinfo=timezone.utc)
                images.append(
                    Image(
                        id=file.stem,
                        commit=data["commit"],
                        created_at=created_at,
                        tag=data.get("tag"),
                    )
                )
            except (OSError, ValueError, KeyError, TypeError) as err:
                error = f"Error reading image metadata {file}: {err}"
                logging.error(error)
                errors.append(error)
        return images, errors

    def delete(self, image: Image) -> list[str]:
        try:
            self.image_path(image).unlink()
            return []
        except OSError as err:
            error = f"Error deleting image {image.id}: {err}"
            logging.error(error)
            return [error]
