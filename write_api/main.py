"""
Write API
Writes a single value to an OPC UA node. The node's data type is read from the
server first and the request value is cast to it (or to an explicit dataType).
"""
import logging
import sys
from typing import Any

import uvicorn
from asyncua import ua
from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from common.config import Settings, get_settings
from common.logging_setup import configure_logging
from ingest_agent.remote import RemoteSession

logger = logging.getLogger(__name__)

SIGNED_TYPES = {"SByte", "Int16", "Int32", "Int64"}
UNSIGNED_TYPES = {"Byte", "UInt16", "UInt32", "UInt64"}
FLOAT_TYPES = {"Float", "Double"}
SUPPORTED_TYPES = SIGNED_TYPES | UNSIGNED_TYPES | FLOAT_TYPES | {"Boolean", "String"}


def cast_value(value: Any, type_name: str) -> Any:
    """Cast a JSON value to the Python value expected for an OPC UA built-in type."""
    if type_name == "Boolean":
        return value is True or (isinstance(value, str) and value.strip().lower() == "true")
    if type_name in SIGNED_TYPES:
        return int(float(value))
    if type_name in UNSIGNED_TYPES:
        return max(0, int(float(value)))
    if type_name in FLOAT_TYPES:
        return float(value)
    if type_name == "String":
        return str(value)
    raise ValueError(f"Unsupported dataType: {type_name}")


def create_app(settings: Settings, session_factory=RemoteSession) -> FastAPI:
    app = FastAPI(title="OPC UA Historian Write API")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/write-node")
    async def write_node(payload: dict = Body(...)):
        node_id = payload.get("nodeId")
        value = payload.get("value")
        endpoint = payload.get("opcuaEndpoint") or settings.opcua_endpoint
        requested_type = payload.get("dataType")

        if not node_id or "value" not in payload or value is None:
            raise HTTPException(status_code=400, detail="Missing required parameters")
        if requested_type and requested_type not in SUPPORTED_TYPES:
            raise HTTPException(status_code=400, detail=f"Unsupported OPC UA data type: {requested_type}")

        session = session_factory(endpoint, settings.opcua_timeout)
        connected = False
        try:
            await session.connect()
            connected = True

            variant_type = await session.read_variant_type(node_id)
            expected_type = variant_type.name
            logger.info(f"This node ({node_id}) expects: {expected_type}")

            final_type = requested_type or expected_type
            if final_type not in SUPPORTED_TYPES:
                raise HTTPException(status_code=400, detail=f"Unsupported OPC UA data type: {final_type}")
            try:
                typed_value = cast_value(value, final_type)
            except (TypeError, ValueError) as e:
                raise HTTPException(status_code=400, detail=f"Cannot cast {value!r} to {final_type}: {e}")

            await session.write_value(node_id, typed_value, ua.VariantType[final_type])
            logger.info(f"Write status for {node_id}: Good")
            return {
                "status": "success",
                "message": "Good",
                "nodeId": node_id,
                "written": value,
                "confirmed": True,
                "expectedType": expected_type,
                "usedType": final_type,
            }
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error writing node {node_id}: {e}")
            return JSONResponse(
                status_code=500,
                content={
                    "status": "failure",
                    "message": f"OPC UA write failed: {e}",
                    "nodeId": node_id,
                    "written": value,
                    "confirmed": False,
                },
            )
        finally:
            if connected:
                try:
                    await session.close_session()
                    await session.disconnect()
                except Exception as e:
                    logger.warning(f"Error closing OPC UA session: {e}")

    return app


def main() -> int:
    settings = get_settings()
    configure_logging("write-api", settings.log_level, settings.log_dir)
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.write_api_port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
