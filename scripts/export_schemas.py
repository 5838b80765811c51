"""Export JSON schemas for Trip, Destination and Photo."""

import json
from pathlib import Path

from tripsync.models import Destination, Photo, Trip


def main() -> None:
    """Export schemas to docs/schemas/."""
    schemas_dir = Path("docs/schemas")
    schemas_dir.mkdir(parents=True, exist_ok=True)

    for model in (Trip, Destination, Photo):
        # Wire names, as the REST API sends them
        schema = model.model_json_schema(by_alias=True)
        path = schemas_dir / f"{model.__name__}.schema.json"
        with open(path, "w") as f:
            json.dump(schema, f, indent=2)
        print(f"Exported {model.__name__} schema to {path}")


if __name__ == "__main__":
    main()
