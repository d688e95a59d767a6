"""
Run the SoundStage backend: python -m soundstage
"""
import os

import uvicorn


def main():
    uvicorn.run(
        "soundstage.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
