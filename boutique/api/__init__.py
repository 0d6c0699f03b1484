# REST API
