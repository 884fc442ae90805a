REDIS_HISTORY_KEY = "history:{room}" # room name - list of serialized events, append order
REDIS_ACTIVE_ROOMS_KEY = "active_rooms" # set of room names that were ever joined or written
REDIS_LIVE_CHANNEL = "live_updates" # single pub/sub channel carrying every room's events

# **Pub/Sub**
# - One channel for all rooms. Every instance receives every room's traffic and
#   filters by the `room` field before fan-out, so subscription count stays at one
#   per process. Sharding the channel by room hash is the way out if that stops scaling.
# - Messages are JSON blobs: {"type", "room", "username", "payload"}.
