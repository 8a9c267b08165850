import os

import uvicorn


# =============================================================================
# Main Entry Point
# =============================================================================


def main() -> None:
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("renderfleet.main:app", host=os.environ.get("HOST", "127.0.0.1"), port=port)


if __name__ == "__main__":
    main()
