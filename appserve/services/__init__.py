"""Work the server does on startup: views, PWA assets and minification."""
