# chatrelay protocol constants (numeric keys and message types)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_CHANNEL = 5
K_BODY = 6
# Request id an acknowledgment or error answers.
K_REF = 7

# Message types
T_WELCOME = 2

T_REGISTER = 10
T_LOGIN = 11

T_FIND_USER_BY_ID = 20
T_FIND_USER_BY_PHONE = 21
T_GET_ALL_USERS = 22

T_JOIN_CHANNEL = 30
T_CHANNEL_HISTORY = 31

T_SEND_MESSAGE = 40
T_NEW_MESSAGE = 41

T_RESULT = 50
T_ERROR = 51

T_PING = 60
T_PONG = 61

T_COMMAND = 70

T_RESOURCE_ENVELOPE = 80

# Request body keys (register, login, find_user_*, join_channel).
B_PHONE = 0
B_NAME = 1
B_SECRET = 2
B_COUNTRY = 3
B_USER_ID = 4

# T_RESULT / T_ERROR body keys
B_OK = 0
B_CODE = 1
B_ERROR = 2
B_RES_USER_ID = 3
B_RES_USER = 4
B_RES_USERS = 5
B_RES_DATA = 6

# Identity summary keys
U_ID = 0
U_PHONE = 1
U_NAME = 2
U_COUNTRY = 3
U_LANGUAGE = 4
U_LAST_SEEN = 5
U_CREATED = 6

# Message keys (send_message body, new_message body, history entries)
M_SENDER = 0
M_PAYLOAD = 1
M_TS = 2
M_SEQ = 3

# CHANNEL_HISTORY body keys
B_HIST_MESSAGES = 0
B_HIST_MORE = 1

# WELCOME body keys
B_WELCOME_HUB = 0
B_WELCOME_VER = 1
B_WELCOME_GREETING = 2

# RESOURCE_ENVELOPE body keys
B_RES_ID = 0
B_RES_KIND = 1
B_RES_SIZE = 2
B_RES_SHA256 = 3

# Resource kinds (string values)
RES_KIND_HISTORY = "history"

# Identifier issuance
ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ID_LENGTH = 7
ID_MAX_ATTEMPTS = 5

DEFAULT_LANGUAGE = "en"
UNKNOWN_SENDER = "unknown"

# Error codes carried in B_CODE
E_MISSING_FIELD = "missing_field"
E_ALREADY_REGISTERED = "already_registered"
E_ID_EXHAUSTED = "id_exhausted"
E_NOT_FOUND = "not_found"
E_INVALID_CREDENTIAL = "invalid_credential"
E_BAD_MESSAGE = "bad_message"
E_RATE_LIMITED = "rate_limited"
E_NOT_AUTHENTICATED = "not_authenticated"
E_NOT_AUTHORIZED = "not_authorized"
E_UNKNOWN_COMMAND = "unknown_command"
E_TOO_LARGE = "too_large"
E_BAD_FIELD = "bad_field"
