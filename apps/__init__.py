# Service packages live under apps/<service>/app and are imported as
# ``apps.<service>.app.<module>`` (e.g. ``apps.pos.app.main:app``).
