import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from livecast.api.v1.routes import routers as v1_routers
from livecast.core.config import configs
from livecast.core.container import Container
from livecast.utils.class_object import singleton

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@singleton
class AppCreator:
    def __init__(self):
        # Init DI container
        self.container = Container()

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            watcher = self.container.watcher()
            await watcher.start()
            logger.info(f"{configs.PROJECT_NAME} started (env={configs.ENV})")
            try:
                yield
            finally:
                await watcher.stop()
                await self.container.coordinator().shutdown()
                logger.info(f"{configs.PROJECT_NAME} stopped")

        # Init FastAPI
        self.app = FastAPI(
            title=configs.PROJECT_NAME,
            version="0.1.0",
            openapi_url=f"{configs.API_V1_STR}/openapi.json",
            lifespan=lifespan,
        )

        # CORS
        if configs.BACKEND_CORS_ORIGINS:
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=[str(origin) for origin in configs.BACKEND_CORS_ORIGINS],
                allow_credentials=True,
                allow_methods=["*"],
                allow_headers=["*"],
            )

        # Health check
        @self.app.get("/")
        async def root():
            return {"status": "service is working"}

        # API v1 routes
        self.app.include_router(
            v1_routers,
            prefix=configs.API_V1_STR,
        )


app_creator = AppCreator()
app = app_creator.app
container = app_creator.container
