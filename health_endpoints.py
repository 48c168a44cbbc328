import azure.functions as func
from function_app import app
from utils.cors import build_cors_headers


@app.function_name(name="Health")
@app.route(route="health", methods=["GET", "HEAD", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def health(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "HEAD", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = "" if req.method == "HEAD" else "OK"
    return func.HttpResponse(body, status_code=200, mimetype="text/plain", headers=cors)
