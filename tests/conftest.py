import fakeredis
import pytest
from fakeredis import aioredis

from chatbridge.config.settings import Settings
from chatbridge.database import Database
from chatbridge.models.messaging import FacebookAccountDetails, MessagingPlatform, WhatsAppAccountDetails
from chatbridge.services.container import MessagingServices
from chatbridge.services.redis_service import RedisLockManager

from helpers import (
    FACEBOOK_APP_SECRET,
    JWT_AUDIENCE,
    JWT_SECRET,
    WHATSAPP_APP_SECRET,
    FakePlatformClient,
)

OWNER = "user-1"


@pytest.fixture
def settings():
    test_settings = Settings()
    test_settings.FACEBOOK_APP_SECRET = FACEBOOK_APP_SECRET
    test_settings.FACEBOOK_WEBHOOK_VERIFY_TOKEN = "fb-verify"
    test_settings.WHATSAPP_APP_SECRET = WHATSAPP_APP_SECRET
    test_settings.WHATSAPP_WEBHOOK_VERIFY_TOKEN = "wa-verify"
    test_settings.WEBHOOK_VERIFY_SIGNATURES = True
    test_settings.JWT_SECRET_KEY = JWT_SECRET
    test_settings.JWT_AUDIENCE = JWT_AUDIENCE
    test_settings.SQLITE_DB_PATH = ":memory:"
    test_settings.PROCESSING_ASYNC_ENABLED = False
    test_settings.REPLAY_ON_STARTUP = False
    test_settings.SSE_HEARTBEAT_SECONDS = 0
    test_settings.MAX_RETRY_ATTEMPTS = 2
    test_settings.RETRY_DELAY_SECONDS = 0
    test_settings.RATE_LIMIT_REQUESTS_PER_MINUTE = 600
    test_settings.RATE_LIMIT_MAX_WAIT_SECONDS = 1
    test_settings.PROFILE_REFETCH_HOURS = 24
    test_settings.LOCK_WAIT_SECONDS = 5
    test_settings.LOCK_POLL_SECONDS = 0.005
    return test_settings


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return aioredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def locks(redis_client):
    return RedisLockManager(redis_client, wait_time=5, poll_interval=0.005)


@pytest.fixture
async def db():
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def fb_client():
    return FakePlatformClient(prefix="m_fb")


@pytest.fixture
def wa_client():
    return FakePlatformClient(prefix="wamid")


@pytest.fixture
async def services(settings, db, fb_client, wa_client, redis_client):
    container = MessagingServices(
        settings,
        db,
        clients={MessagingPlatform.FACEBOOK: fb_client, MessagingPlatform.WHATSAPP: wa_client},
        redis_client=redis_client,
    )
    yield container
    await container.stop()


@pytest.fixture
async def facebook_account(db):
    account_id = await db.insert_account(
        OWNER, FacebookAccountDetails(page_id="PAGE1"), "fb-token",
        account_name="Main Page", webhook_verify_token="page-verify",
    )
    return await db.get_account(account_id)


@pytest.fixture
async def whatsapp_account(db):
    account_id = await db.insert_account(
        OWNER, WhatsAppAccountDetails(phone_number_id="PHONE1", business_account_id="WABA1"), "wa-token",
        account_name="Support Line",
    )
    return await db.get_account(account_id)
