from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from activation_portal.config import CarrierFieldRules, configure_logging, settings
from activation_portal.db import init_db
from activation_portal.errors import install_error_handlers
from activation_portal.routers import admin, auth, chat, documents
from activation_portal.security.headers import install_security_headers
from activation_portal.services.chat_service import ChatHub


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title='Activation Portal')

    app.state.carrier_rules = CarrierFieldRules.from_mapping(settings.carrier_field_rules)
    app.state.chat_hub = ChatHub()

    install_security_headers(app)
    install_error_handlers(app)

    app.include_router(auth.router)
    app.include_router(documents.router)
    app.include_router(admin.router)
    app.include_router(chat.router)

    if settings.auto_create_schema:
        init_db()

    @app.get('/robots.txt', response_class=PlainTextResponse)
    def robots_txt() -> str:
        return 'User-agent: *\nDisallow: /\n'

    @app.get('/health')
    def health() -> dict:
        return {'ok': True}

    return app


app = create_app()
