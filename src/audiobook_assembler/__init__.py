"""Audiobook Assembler -- batch-transcode audio trees and bind files into chaptered M4B audiobooks.

Core modules:
    config    -- Configuration via pydantic-settings (.env + env vars) and loguru setup
    cli       -- Click entry points: audiobook-batch (tree transcode) and
                 audiobook-assemble (combine files into one .m4b)
    engine    -- Media engine interface and the ffmpeg/ffprobe subprocess engine.
                 Private scratch workspace, open/close lifecycle, log/progress
                 callbacks, per-call timeout and cooperative cancellation.
    probe     -- Per-file duration/tag probe and embedded cover extraction.
                 Scratch artifacts are uniquely named and always deleted.
    pool      -- Bounded-concurrency runner over a lazily consumed producer
    chapters  -- Contiguous millisecond chapter timeline + FFMETADATA1 rendering
    metadata  -- First-non-empty merge of album/artist/composer/date/cover
    assembly  -- Staged probe -> concat -> mux -> finalize pipeline with
                 guaranteed scratch cleanup on every exit path
    batch     -- Directory tree transcode with skip-if-exists and dry-run
    sanitize  -- Output file names and escaping for concat/metadata files
"""
