"""Remote access, credential handling, streaming and storage for the archiver."""
