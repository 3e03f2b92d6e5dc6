import azure.functions as func
from function_app import app, rate_limiter
from reports_shared import json_response
from utils.cors import build_cors_headers


@app.function_name(name="HealthApi")
@app.route(route="health", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def health_api(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return json_response({"status": "ok", "rateLimits": rate_limiter.metrics()}, 200, cors)
