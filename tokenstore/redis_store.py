"""
tokenstore/redis_store.py -- Redis-backed TokenRecordStore.

Key layout (prefix "tokenwarden:refresh:"):
  token:{token_id}   hash   user_id, chain_root_id, issued_at, expires_at,
                            expires_ts, used, revoked, successor_id
  chain:{root_id}    set    token ids in the rotation chain
  user:{user_id}     set    chain root ids owned by the user

Every key carries a TTL equal to the remaining lifetime of the newest token it
covers, so expired records age out without a sweeper.

Atomicity: put, rotate, revoke, revoke_chain and revoke_user are Lua scripts.
Redis runs a script start to finish with no interleaved commands, which makes
rotate a true compare-and-swap on the "used" flag. The scripts derive chain
and user keys from the token hash, so they assume a single Redis node (no
cluster slot routing).

Failure handling: redis ConnectionError and TimeoutError surface as
StoreUnavailable; FailoverTokenRecordStore decides what to do with it.
"""

from __future__ import annotations

import logging
from datetime import datetime

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from auth.errors import StoreUnavailable
from auth.models import RefreshToken
from tokenstore.base import RotationOutcome

logger = logging.getLogger("tokenwarden.tokenstore")

KEY_PREFIX = "tokenwarden:refresh:"

# ---------------------------------------------------------------------------
# Lua scripts
# ---------------------------------------------------------------------------

# Extends key TTL only upward so a short-lived member never shortens a set.
_EXTEND_TTL = """
local function extend_ttl(key, ttl)
  if redis.call('TTL', key) < ttl then
    redis.call('EXPIRE', key, ttl)
  end
end
"""

# KEYS[1] token hash. ARGV: prefix, token_id, user_id, chain_root_id,
# issued_at, expires_at, expires_ts, ttl
_PUT_SCRIPT = _EXTEND_TTL + """
local ttl = tonumber(ARGV[8])
redis.call('HSET', KEYS[1],
  'user_id', ARGV[3], 'chain_root_id', ARGV[4],
  'issued_at', ARGV[5], 'expires_at', ARGV[6], 'expires_ts', ARGV[7],
  'used', '0', 'revoked', '0', 'successor_id', '')
redis.call('EXPIRE', KEYS[1], ttl)
local chain_key = ARGV[1] .. 'chain:' .. ARGV[4]
local user_key = ARGV[1] .. 'user:' .. ARGV[3]
redis.call('SADD', chain_key, ARGV[2])
extend_ttl(chain_key, ttl)
redis.call('SADD', user_key, ARGV[4])
extend_ttl(user_key, ttl)
return 1
"""

# Marks every live member of one chain revoked. Shared by rotate (reuse path)
# and revoke_chain / revoke_user.
_REVOKE_CHAIN_FN = """
local function revoke_chain(prefix, root)
  local count = 0
  local members = redis.call('SMEMBERS', prefix .. 'chain:' .. root)
  for _, tid in ipairs(members) do
    local key = prefix .. 'token:' .. tid
    if redis.call('EXISTS', key) == 1 and redis.call('HGET', key, 'revoked') ~= '1' then
      redis.call('HSET', key, 'revoked', '1')
      count = count + 1
    end
  end
  return count
end
"""

# KEYS[1] presented hash, KEYS[2] successor hash.
# ARGV: prefix, now_ts, successor_id, issued_at, expires_at, expires_ts, ttl
_ROTATE_SCRIPT = _EXTEND_TTL + _REVOKE_CHAIN_FN + """
local f = redis.call('HMGET', KEYS[1], 'user_id', 'chain_root_id', 'expires_ts', 'used', 'revoked')
if not f[1] then
  return 'not_found'
end
if tonumber(ARGV[2]) > tonumber(f[3]) then
  return 'expired'
end
if f[4] == '1' then
  revoke_chain(ARGV[1], f[2])
  return 'reuse_detected'
end
if f[5] == '1' then
  return 'revoked'
end
local ttl = tonumber(ARGV[7])
redis.call('HSET', KEYS[1], 'used', '1', 'successor_id', ARGV[3])
redis.call('HSET', KEYS[2],
  'user_id', f[1], 'chain_root_id', f[2],
  'issued_at', ARGV[4], 'expires_at', ARGV[5], 'expires_ts', ARGV[6],
  'used', '0', 'revoked', '0', 'successor_id', '')
redis.call('EXPIRE', KEYS[2], ttl)
local chain_key = ARGV[1] .. 'chain:' .. f[2]
redis.call('SADD', chain_key, ARGV[3])
extend_ttl(chain_key, ttl)
extend_ttl(ARGV[1] .. 'user:' .. f[1], ttl)
return 'rotated'
"""

# KEYS[1] token hash.
_REVOKE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 or redis.call('HGET', KEYS[1], 'revoked') == '1' then
  return 0
end
redis.call('HSET', KEYS[1], 'revoked', '1')
return 1
"""

# ARGV: prefix, chain_root_id
_REVOKE_CHAIN_SCRIPT = _REVOKE_CHAIN_FN + """
return revoke_chain(ARGV[1], ARGV[2])
"""

# KEYS[1] user set. ARGV: prefix
_REVOKE_USER_SCRIPT = _REVOKE_CHAIN_FN + """
local total = 0
for _, root in ipairs(redis.call('SMEMBERS', KEYS[1])) do
  total = total + revoke_chain(ARGV[1], root)
end
return total
"""


def _ttl_seconds(expires_at: datetime, now: datetime) -> int:
    return max(1, int((expires_at - now).total_seconds()) + 1)


class RedisTokenRecordStore:
    """Refresh-token records in Redis, shared by every worker process.

    Usage:
        store = RedisTokenRecordStore("redis://localhost:6379/0")
        store = RedisTokenRecordStore(client=fakeredis.FakeRedis(decode_responses=True))
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str = "",
        *,
        client: Redis | None = None,
        timeout: float = 0.5,
        prefix: str = KEY_PREFIX,
    ) -> None:
        if client is None:
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        self.client = client
        self.prefix = prefix
        self._put = client.register_script(_PUT_SCRIPT)
        self._rotate = client.register_script(_ROTATE_SCRIPT)
        self._revoke = client.register_script(_REVOKE_SCRIPT)
        self._revoke_chain = client.register_script(_REVOKE_CHAIN_SCRIPT)
        self._revoke_user = client.register_script(_REVOKE_USER_SCRIPT)

    # ------------------------------------------------------------------
    # TokenRecordStore
    # ------------------------------------------------------------------

    def put(self, record: RefreshToken) -> None:
        ttl = _ttl_seconds(record.expires_at, record.issued_at)
        self._call(
            self._put,
            keys=[self._token_key(record.token_id)],
            args=[
                self.prefix,
                record.token_id,
                record.user_id,
                record.chain_root_id,
                record.issued_at.isoformat(),
                record.expires_at.isoformat(),
                repr(record.expires_at.timestamp()),
                ttl,
            ],
        )

    def get(self, token_id: str) -> RefreshToken | None:
        fields = self._call(self.client.hgetall, self._token_key(token_id))
        if not fields:
            return None
        return self._record_from_hash(token_id, fields)

    def rotate(self, presented_id: str, successor: RefreshToken, now: datetime) -> RotationOutcome:
        result = self._call(
            self._rotate,
            keys=[self._token_key(presented_id), self._token_key(successor.token_id)],
            args=[
                self.prefix,
                repr(now.timestamp()),
                successor.token_id,
                successor.issued_at.isoformat(),
                successor.expires_at.isoformat(),
                repr(successor.expires_at.timestamp()),
                _ttl_seconds(successor.expires_at, now),
            ],
        )
        return RotationOutcome(result)

    def revoke(self, token_id: str) -> bool:
        return bool(self._call(self._revoke, keys=[self._token_key(token_id)]))

    def revoke_chain(self, chain_root_id: str) -> int:
        return int(self._call(self._revoke_chain, keys=[], args=[self.prefix, chain_root_id]))

    def revoke_user(self, user_id: str) -> int:
        return int(self._call(self._revoke_user, keys=[self._user_key(user_id)], args=[self.prefix]))

    def chain(self, chain_root_id: str) -> list[RefreshToken]:
        members = self._call(self.client.smembers, self._chain_key(chain_root_id))
        records = []
        for token_id in members:
            record = self.get(token_id)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.issued_at)

    def ping(self) -> bool:
        return bool(self._call(self.client.ping))

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.debug("Redis call failed: %s", exc)
            raise StoreUnavailable("refresh-token store unreachable") from exc

    def _token_key(self, token_id: str) -> str:
        return f"{self.prefix}token:{token_id}"

    def _chain_key(self, chain_root_id: str) -> str:
        return f"{self.prefix}chain:{chain_root_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.prefix}user:{user_id}"

    @staticmethod
    def _record_from_hash(token_id: str, fields: dict) -> RefreshToken:
        return RefreshToken(
            token_id=token_id,
            user_id=fields["user_id"],
            chain_root_id=fields["chain_root_id"],
            issued_at=datetime.fromisoformat(fields["issued_at"]),
            expires_at=datetime.fromisoformat(fields["expires_at"]),
            used=fields.get("used") == "1",
            revoked=fields.get("revoked") == "1",
            successor_id=fields.get("successor_id") or None,
        )
