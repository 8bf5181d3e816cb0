VERSION = "0.4.0"

NOTE_ID_KEY = "mp-id"
