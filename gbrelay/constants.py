# gbrelay wire constants (envelope keys and event names)

WIRE_VERSION = 1

# Envelope keys
K_V = 0
K_EVENT = 1
K_ID = 2
K_TS = 3
K_BODY = 6

# Inbound events (client -> relay)
E_JOIN_ROOM = "join_room"
E_LEAVE_ROOM = "leave_room"
E_SEND_MESSAGE = "send_message"
E_TYPING = "typing"
E_STOP_TYPING = "stop_typing"
E_REGISTER_USER = "register_user"
E_JOIN_DM_ROOM = "join_dm_room"
E_LEAVE_DM_ROOM = "leave_dm_room"
E_SEND_DM = "send_dm"
E_DM_TYPING = "dm_typing"

# Reserved for the transport; never accepted from the wire.
E_DISCONNECT = "disconnect"

# Outbound events (relay -> client)
E_ROOM_USERS = "room_users"
E_USER_JOINED = "user_joined"
E_USER_LEFT = "user_left"
E_NEW_MESSAGE = "new_message"
E_USER_TYPING = "user_typing"
E_NEW_DM = "new_dm"
E_DM_USER_TYPING = "dm_user_typing"

# Transport-level events
E_WELCOME = "welcome"
E_PING = "ping"
E_PONG = "pong"

# Room key kinds
ROOM_GAME = "game"
ROOM_DM = "dm"
DM_ROOM_PREFIX = "dm_"

ANONYMOUS_USERNAME = "Anonymous"

MESSAGE_TYPES = ("text", "reaction")
DEFAULT_MESSAGE_TYPE = "text"
