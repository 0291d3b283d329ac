from tubegate.config import Settings
from tubegate.server import create_app

settings = Settings.from_env()
app = create_app(settings)

# Local runs; deployments use `uvicorn app:app`
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host=settings.host, port=settings.port, reload=settings.debug)
