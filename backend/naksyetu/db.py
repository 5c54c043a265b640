"""MongoDB connection management, index creation and the in-memory test store."""
import copy
import logging
import os
import re
import types
from urllib.parse import urlparse, urlunparse, urlencode, parse_qsl, quote

from bson.objectid import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger('db')

# ---------------- In-memory Fake DB (test mode) -----------------
# Implements the subset of the motor API used by the application so the
# test-suite can run without a MongoDB server (USE_FAKE_DB_FOR_TESTS=1).

_MISSING = object()


def _get_path(doc, key):
    cur = doc
    for part in key.split('.'):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return _MISSING
    return cur


def _set_path(doc, key, value):
    parts = key.split('.')
    cur = doc
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


def _unset_path(doc, key):
    parts = key.split('.')
    cur = doc
    for part in parts[:-1]:
        cur = cur.get(part)
        if not isinstance(cur, dict):
            return
    cur.pop(parts[-1], None)


def _eq(actual, expected) -> bool:
    if actual is _MISSING:
        return expected is None
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _ordered(actual, op, expected) -> bool:
    if actual is _MISSING or actual is None:
        return False
    try:
        if op == '$gt':
            return actual > expected
        if op == '$gte':
            return actual >= expected
        if op == '$lt':
            return actual < expected
        return actual <= expected
    except TypeError:
        return False


def _match_condition(actual, cond: dict) -> bool:
    for op, expected in cond.items():
        if op == '$options':
            continue
        if op == '$eq':
            ok = _eq(actual, expected)
        elif op == '$ne':
            ok = not _eq(actual, expected)
        elif op == '$in':
            ok = any(_eq(actual, e) for e in expected)
        elif op == '$nin':
            ok = not any(_eq(actual, e) for e in expected)
        elif op == '$exists':
            ok = (actual is not _MISSING) == bool(expected)
        elif op == '$regex':
            flags = re.IGNORECASE if 'i' in (cond.get('$options') or '') else 0
            ok = isinstance(actual, str) and re.search(expected, actual, flags) is not None
        elif op in ('$gt', '$gte', '$lt', '$lte'):
            ok = _ordered(actual, op, expected)
        else:
            raise NotImplementedError(f'fake db does not support operator {op}')
        if not ok:
            return False
    return True


def _matches(doc: dict, filt: dict | None) -> bool:
    if not filt:
        return True
    for key, expected in filt.items():
        if key == '$or':
            if not any(_matches(doc, sub) for sub in expected):
                return False
            continue
        if key == '$and':
            if not all(_matches(doc, sub) for sub in expected):
                return False
            continue
        actual = _get_path(doc, key)
        if isinstance(expected, re.Pattern):
            if not (isinstance(actual, str) and expected.search(actual)):
                return False
        elif isinstance(expected, dict) and expected and all(k.startswith('$') for k in expected):
            if not _match_condition(actual, expected):
                return False
        elif not _eq(actual, expected):
            return False
    return True


def _apply_update(doc: dict, update: dict, inserting: bool = False) -> None:
    for key, value in (update.get('$set') or {}).items():
        _set_path(doc, key, copy.deepcopy(value))
    for key in (update.get('$unset') or {}):
        _unset_path(doc, key)
    for key, value in (update.get('$inc') or {}).items():
        current = _get_path(doc, key)
        _set_path(doc, key, (0 if current in (_MISSING, None) else current) + value)
    for key, value in (update.get('$push') or {}).items():
        current = _get_path(doc, key)
        items = list(current) if isinstance(current, list) else []
        items.extend(value['$each'] if isinstance(value, dict) and '$each' in value else [value])
        _set_path(doc, key, items)
    for key, value in (update.get('$addToSet') or {}).items():
        current = _get_path(doc, key)
        items = list(current) if isinstance(current, list) else []
        for item in (value['$each'] if isinstance(value, dict) and '$each' in value else [value]):
            if item not in items:
                items.append(item)
        _set_path(doc, key, items)
    for key, value in (update.get('$pull') or {}).items():
        current = _get_path(doc, key)
        if isinstance(current, list):
            _set_path(doc, key, [i for i in current if i != value])
    if inserting:
        for key, value in (update.get('$setOnInsert') or {}).items():
            _set_path(doc, key, copy.deepcopy(value))


def _sort_key(field):
    def _key(doc):
        value = _get_path(doc, field)
        if value is _MISSING or value is None:
            return (0, 0)
        return (1, value)
    return _key


class _InsertOneResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class _UpdateResult:
    def __init__(self, matched, modified, upserted_id=None):
        self.matched_count = matched
        self.modified_count = modified
        self.upserted_id = upserted_id


class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list, direction=None):
        if isinstance(key_or_list, str):
            spec = [(key_or_list, direction if direction is not None else 1)]
        else:
            spec = list(key_or_list)
        for field, dirn in reversed(spec):
            self._docs.sort(key=_sort_key(field), reverse=int(dirn) == -1)
        return self

    def skip(self, n: int):
        self._skip = n
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def _materialize(self) -> list[dict]:
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return docs

    def __aiter__(self):
        self._iter = iter(self._materialize())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration

    async def to_list(self, length=None):
        docs = self._materialize()
        return docs[:length] if length else docs


class FakeCollection:
    def __init__(self, name):
        self._name = name
        self._store: list[dict] = []
        self._unique: set[tuple[str, ...]] = set()

    async def create_index(self, keys, unique: bool = False, **kwargs):
        fields = (keys,) if isinstance(keys, str) else tuple(k for k, _ in keys)
        if unique:
            self._unique.add(fields)
        return keys if isinstance(keys, str) else '_'.join(f'{k}_{d}' for k, d in keys)

    def _check_unique(self, doc: dict, ignore=None) -> None:
        for d in self._store:
            if d is ignore:
                continue
            if d['_id'] == doc.get('_id'):
                raise DuplicateKeyError(f"E11000 duplicate key error collection: {self._name} index: _id_")
            for fields in self._unique:
                # documents missing a key field are outside sparse/partial indexes
                values = [_get_path(doc, f) for f in fields]
                if any(v in (_MISSING, None) for v in values):
                    continue
                if [_get_path(d, f) for f in fields] == values:
                    index = '_'.join(fields)
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self._name} index: {index}")

    async def insert_one(self, doc: dict):
        if '_id' not in doc:
            doc['_id'] = ObjectId()
        self._check_unique(doc)
        self._store.append(copy.deepcopy(doc))
        return _InsertOneResult(doc['_id'])

    async def insert_many(self, docs: list[dict]):
        ids = []
        for doc in docs:
            res = await self.insert_one(doc)
            ids.append(res.inserted_id)
        return types.SimpleNamespace(inserted_ids=ids)

    async def find_one(self, filt: dict | None = None, projection=None, sort=None):
        cursor = self.find(filt)
        if sort:
            cursor.sort(sort)
        docs = await cursor.limit(1).to_list()
        return docs[0] if docs else None

    def find(self, filt: dict | None = None, projection=None):
        return FakeCursor([copy.deepcopy(d) for d in self._store if _matches(d, filt)])

    async def count_documents(self, filt: dict | None = None):
        return sum(1 for d in self._store if _matches(d, filt))

    def _upsert_doc(self, filt: dict, update: dict) -> dict:
        new_doc = {k: copy.deepcopy(v) for k, v in (filt or {}).items()
                   if not k.startswith('$') and not isinstance(v, dict)}
        _apply_update(new_doc, update, inserting=True)
        new_doc.setdefault('_id', ObjectId())
        self._check_unique(new_doc)
        self._store.append(new_doc)
        return new_doc

    async def find_one_and_update(self, filt: dict, update: dict, upsert: bool = False,
                                  return_document=ReturnDocument.BEFORE, sort=None, projection=None):
        candidates = [d for d in self._store if _matches(d, filt)]
        if sort:
            for field, dirn in reversed(list(sort)):
                candidates.sort(key=_sort_key(field), reverse=int(dirn) == -1)
        if candidates:
            target = candidates[0]
            original = copy.deepcopy(target)
            _apply_update(target, update)
            return copy.deepcopy(target) if return_document == ReturnDocument.AFTER else original
        if not upsert:
            return None
        new_doc = self._upsert_doc(filt, update)
        return copy.deepcopy(new_doc) if return_document == ReturnDocument.AFTER else None

    async def update_one(self, filt: dict, update: dict, upsert: bool = False):
        for d in self._store:
            if _matches(d, filt):
                _apply_update(d, update)
                return _UpdateResult(1, 1)
        if upsert:
            new_doc = self._upsert_doc(filt, update)
            return _UpdateResult(0, 0, new_doc['_id'])
        return _UpdateResult(0, 0)

    async def update_many(self, filt: dict, update: dict):
        modified = 0
        for d in self._store:
            if _matches(d, filt):
                _apply_update(d, update)
                modified += 1
        return _UpdateResult(modified, modified)

    async def delete_one(self, filt: dict):
        for idx, d in enumerate(self._store):
            if _matches(d, filt):
                del self._store[idx]
                return types.SimpleNamespace(deleted_count=1)
        return types.SimpleNamespace(deleted_count=0)

    async def delete_many(self, filt: dict):
        before = len(self._store)
        self._store[:] = [d for d in self._store if not _matches(d, filt)]
        return types.SimpleNamespace(deleted_count=before - len(self._store))


class FakeDB:
    def __init__(self):
        self._collections: dict[str, FakeCollection] = {}

    def __getattr__(self, item):
        if item.startswith('_'):
            raise AttributeError(item)
        if item not in self._collections:
            self._collections[item] = FakeCollection(item)
        return self._collections[item]

    def __getitem__(self, item):
        return self.__getattr__(item)

    def reset(self):
        """Drop all documents while keeping unique index definitions."""
        for coll in self._collections.values():
            coll._store.clear()


_fake_db = FakeDB()


class MongoDB:
    """Wrapper managing a Motor client + DB plus test fake DB swap."""
    def __init__(self):
        self.client: AsyncIOMotorClient | None = None
        self.db = None
        self._connected = False

    async def connect(self):
        """Connect to MongoDB (or fake) and create indexes (idempotent)."""
        if self._connected:
            return

        base_url = os.getenv('MONGO_URI', 'mongodb://mongo:27017/naksyetu')
        db_name = os.getenv('MONGO_DB', 'naksyetu')

        if os.getenv('USE_FAKE_DB_FOR_TESTS'):
            self.client = None
            self.db = _fake_db
        else:
            user = os.getenv('MONGO_USER')
            pwd = os.getenv('MONGO_PASSWORD')
            mongo_url = base_url
            if user and '@' not in base_url:
                p = urlparse(base_url)
                path = p.path if p.path and p.path != '/' else f'/{db_name}'
                netloc = f"{quote(user)}:{quote(pwd or '')}@{p.hostname or 'localhost'}"
                if p.port:
                    netloc += f":{p.port}"
                q = dict(parse_qsl(p.query, keep_blank_values=True))
                q.setdefault('authSource', os.getenv('MONGO_AUTH_SOURCE', path.lstrip('/')))
                mongo_url = urlunparse((p.scheme or 'mongodb', netloc, path, '', urlencode(q), ''))
            # tz_aware keeps stored UTC datetimes comparable with datetime.now(timezone.utc)
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[db_name]
        globals()['db'] = self.db

        try:
            await ensure_indexes(self.db)
        except PyMongoError as e:
            logger.warning("db.indexes.failed error=%s", e)

        self._connected = True
        logger.info('db.connected fake=%s', bool(os.getenv('USE_FAKE_DB_FOR_TESTS')))

    async def close(self):
        if self.client:
            self.client.close()
            logger.info('db.closed')
        self._connected = False


async def ensure_indexes(database) -> None:
    # USERS
    await database.users.create_index('email', unique=True)
    await database.users.create_index('name_lower', unique=True, sparse=True)
    await database.users.create_index('role')

    # LISTINGS
    for coll in ('events', 'tours', 'nightlife'):
        await database[coll].create_index('organizer_id')
        await database[coll].create_index('status')

    # COMMERCE
    await database.orders.create_index('organizer_id')
    await database.orders.create_index([('user_id', 1), ('created_at', -1)])
    await database.orders.create_index('status')
    await database.transactions.create_index('checkout_request_id', sparse=True)
    await database.transactions.create_index('order_id')
    await database.tickets.create_index('order_id')
    await database.tickets.create_index('listing_id')

    # CAMPAIGNS
    await database.promocodes.create_index('code', unique=True)
    await database.promocodes.create_index('organizer_id')
    await database.promocodes.create_index('influencer_id')
    await database.tracking_links.create_index('promocode_id')
    await database.promocode_clicks.create_index('promocode_id')

    # LINKS / INVITATIONS
    await database.invitations.create_index('token_hash', unique=True)
    await database.invitations.create_index('status')
    await database.invitation_clicks.create_index('invitation_id')

    # PAYOUTS
    await database.payout_requests.create_index([('user_id', 1), ('status', 1)])
    # idempotency keys are scoped to the requesting user
    await database.payout_requests.create_index(
        [('user_id', 1), ('idempotency_key', 1)], unique=True,
        partialFilterExpression={'idempotency_key': {'$exists': True}},
    )

    # SHOP
    await database.products.create_index([('status', 1), ('created_at', -1)])
    await database.merch_orders.create_index('confirmation_code', unique=True)
    await database.merch_orders.create_index([('user_id', 1), ('created_at', -1)])

    # PARTNER REQUESTS / ADS
    await database.partner_requests.create_index('pending_user_id', unique=True, sparse=True)
    await database.partner_requests.create_index([('status', 1), ('created_at', -1)])
    await database.ad_submissions.create_index([('user_id', 1), ('created_at', -1)])
    await database.ad_submissions.create_index([('status', 1), ('priority', -1)])

    # ADMIN
    await database.audit_logs.create_index([('timestamp', -1)])
    await database.audit_logs.create_index('action')
    await database.notifications.create_index([('created_at', -1)])
    await database.verification_history.create_index([('verifier_id', 1), ('timestamp', -1)])
    await database.user_events.create_index([('action', 1), ('timestamp', -1)])


mongo_db = MongoDB()


async def connect():
    """Module-level connect function used by the application startup event."""
    await mongo_db.connect()


async def close():
    """Module-level close function used by the application shutdown event."""
    await mongo_db.close()


def get_db():
    return mongo_db.db


# Set to the Motor database (or the fake) by connect(); modules use
# `from . import db as db_mod` and then `db_mod.db.<collection>`.
db = None
