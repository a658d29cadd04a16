"""Local sidecar service exposing the huddle presence core to the desktop shell."""
