"""
Serve the dashboard API: ``python -m lms_dashboard`` or ``lms-dashboard``.
"""
import uvicorn

from config.settings import settings


def main() -> None:
    uvicorn.run(
        "lms_dashboard.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
