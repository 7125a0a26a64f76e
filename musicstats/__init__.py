"""
Music-Stats: listening analytics and Google Drive sync for a personal play log

Music-Stats turns an append-only log of play events into listening analytics
(top songs and artists, listening clock, peak day, monthly obsessions, skip
statistics, streaks) and keeps that log consistent between the local machine
and a copy stored in the user's Google Drive application data folder.

## Core Architecture

**Configuration Management (`musicstats/config/`)**
- Settings loaded from YAML files, `.env` files and environment variables
- Persistent cloud sync state (tokens, remote file id, last content hash)
- Google OAuth2 PKCE loopback authorization and token refresh

**Statistics (`musicstats/stats/`)**
- Play record, aggregate and snapshot data models
- Pure aggregation functions for dashboards and daily/monthly rollups
- Calendar-day listening streak tracking
- Playback progress tracking that turns a playing track into a play record

**Storage (`musicstats/store/`)**
- In-memory document backed by a JSON snapshot file
- Buffered writes with a periodic background flush

**Cloud Reconciliation (`musicstats/sync/`)**
- Google Drive app-data REST client with multipart uploads
- Export parsing, content hashing and deterministic merging
- One-pass reconciliation engine with reentrancy guard

**Utilities (`musicstats/utils/`)**
- Colored console and rotating file logging
- Time, hashing and formatting helpers
- Input validation

The `musicstats.session.StatsSession` object wires all of these together and
is the single entry point used by the command line interface.
"""

__version__ = "0.4.0"
__author__ = "Music-Stats Team"
__description__ = "Listening analytics with Google Drive sync for a personal play log"
