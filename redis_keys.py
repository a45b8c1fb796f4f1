REDIS_ROOM_KEY = "room:meta:{record_id}" # room id - room hash
REDIS_SESSION_KEY = "session:{record_id}" # internal session record id - session hash
REDIS_MESSAGE_KEY = "message:{record_id}" # message id - message hash
REDIS_INDEX_KEY = "index:{collection}" # set of record ids per collection

REDIS_ROOM_SESSIONS_KEY = "room:sessions:{value}" # room id - set of session record ids
REDIS_ROOM_MESSAGES_KEY = "room:messages:{value}" # room id - set of message ids
REDIS_SESSION_ID_KEY = "session_id:{value}" # client session id - set of session record ids

COLLECTION_KEYS = {
    "rooms": REDIS_ROOM_KEY,
    "sessions": REDIS_SESSION_KEY,
    "messages": REDIS_MESSAGE_KEY,
}

# (collection, field) -> index set holding the ids of records with that field value.
# When a lookup matches on several indexed fields, the first one listed wins.
FIELD_INDEX_KEYS = {
    ("sessions", "session_id"): REDIS_SESSION_ID_KEY,
    ("sessions", "room_id"): REDIS_ROOM_SESSIONS_KEY,
    ("messages", "room_id"): REDIS_ROOM_MESSAGES_KEY,
}

# **Hash fields**
# Every field is stored JSON-encoded so numbers, booleans and lists survive a
# round trip (`read_by` is a list of {nickname, read_at}).
# - `room:meta:{id}` = id, password_hash, creator, max_occupancy, created_at,
#   expires_at, active, encryption_key, last_activity
# - `session:{id}` = id, session_id, room_id, nickname, invisible, joined_at,
#   last_activity, expires_at, active, connection_id
# - `message:{id}` = id, room_id, sender, ciphertext, iv, created_at,
#   expires_at, read_by, visible

# **TTL**
# Keys get EXPIREAT = expires_at + grace so Redis drops records the reaper
# never reached. Field index sets only ever move their expiry later, to the
# latest member's. Stale members of any index set are pruned when a lookup
# finds their hash gone.
