"""
Constants
Centralised storage for stage names, pipeline ids and commit rules.
"""
# CI stage names
STAGE_CHECKOUT = "Checkout"
STAGE_BUILD = "Build"
STAGE_TEST = "Test"
STAGE_ANALYSIS = "Analysis"
STAGE_QUALITY_GATE = "Quality Gate"
STAGE_PACKAGE = "Package"
STAGE_SCAN = "Scan"
STAGE_PUBLISH = "Publish"
STAGE_TRIGGER_DEPLOY = "Trigger Deploy"
STAGE_CLEANUP = "Cleanup Workspace"

# CD stage names
STAGE_UPDATE_MANIFEST = "Update Manifest"

CI_PIPELINE_NAME = "ci"
CD_PIPELINE_NAME = "cd"

COMMIT_PREFIX = "[conductor] Update image to"
OUTPUT_EXCERPT_LINES = 30
