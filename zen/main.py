from fastapi import FastAPI

from zen.routes import api
from zen.routes import assets

app = FastAPI(title="Zen Test Worker")
app.include_router(api.router)
app.include_router(assets.router)
