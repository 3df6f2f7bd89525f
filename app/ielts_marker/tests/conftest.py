import os

# Must be set before app.ielts_marker.app is imported so TestingConfig is used.
os.environ['FLASK_ENV'] = 'testing'
